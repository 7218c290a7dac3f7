"""
トラフィック配分コマンド実装
"""

import asyncio
import sys
from typing import List, Tuple
from uuid import UUID

import click

from src.cli.utils.errors import cli_errors
from src.cli.utils.output import echo_table
from src.experimentation.models import AllocationUpdate


def traffic_command(abtest_group, pass_context):
    """traffic コマンドを abtest グループに追加"""

    @abtest_group.command()
    @click.argument('test_id', type=click.UUID)
    @click.argument('allocations', nargs=-1, required=True)
    @pass_context
    def traffic(ctx, test_id: UUID, allocations: Tuple[str, ...]):
        """バリアントの配分率を変更する

        ALLOCATIONS は VARIANT_ID=PERCENT 形式で指定します。
        指定しなかったバリアントは現在の配分を維持し、合計は100%である必要があります。

        \b
        使用例:
          abtest traffic <test_id> <variant_a>=70 <variant_b>=30
        """
        ctx.initialize()

        try:
            updates = parse_allocations(allocations)
        except ValueError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)

        with cli_errors("配分率の変更", ctx.verbose):
            asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))
            test = asyncio.run(ctx.manager.set_traffic_allocation(test_id, updates))

            click.echo("配分率を更新しました:\n")
            echo_table(
                ["ID", "バリアント", "配分"],
                [[v.id, v.name, f"{v.traffic_allocation:g}%"] for v in test.variants],
            )


def parse_allocations(values: Tuple[str, ...]) -> List[AllocationUpdate]:
    """VARIANT_ID=PERCENT 形式の引数を AllocationUpdate に変換"""
    updates = []
    for value in values:
        variant_part, sep, percent_part = value.partition("=")
        if not sep:
            raise ValueError(f"配分は VARIANT_ID=PERCENT 形式で指定してください: {value}")
        try:
            variant_id = UUID(variant_part.strip())
        except ValueError:
            raise ValueError(f"無効なバリアントID形式です: {variant_part}")
        try:
            percent = float(percent_part.strip().rstrip("%"))
        except ValueError:
            raise ValueError(f"配分率は数値で指定してください: {percent_part}")
        updates.append(AllocationUpdate(variant_id=variant_id, traffic_allocation=percent))
    return updates
