"""
割り当て・コンバージョン記録コマンド実装

公開エンドポイント相当の操作のため、所有者の確認は行わない。
"""

import asyncio
import json
import sys
from typing import Optional
from uuid import UUID

import click

from src.cli.utils.errors import cli_errors
from src.cli.utils.output import echo_json


def events_command(abtest_group, pass_context):
    """assign / convert コマンドを abtest グループに追加"""

    @abtest_group.command()
    @click.argument('test_id', type=click.UUID)
    @click.argument('session_id')
    @pass_context
    def assign(ctx, test_id: UUID, session_id: str):
        """セッションにバリアントを割り当てる（同じセッションには常に同じバリアント）"""
        ctx.initialize()

        with cli_errors("バリアントの割り当て", ctx.verbose):
            result = asyncio.run(ctx.manager.assign(test_id, session_id))
            echo_json({
                "variant_id": str(result.variant_id),
                "content": result.content,
                "is_new": result.is_new,
            })

    @abtest_group.command()
    @click.argument('test_id', type=click.UUID)
    @click.argument('variant_id', type=click.UUID)
    @click.argument('session_id')
    @click.argument('event')
    @click.option('--value', type=float, help='金額などの数値')
    @click.option('--metadata', help='メタデータ（JSONオブジェクト）')
    @pass_context
    def convert(
        ctx,
        test_id: UUID,
        variant_id: UUID,
        session_id: str,
        event: str,
        value: Optional[float],
        metadata: Optional[str],
    ):
        """コンバージョンイベントを記録する

        EVENT は view / click / approval / sign / conversion など。
        approval / sign / conversion はコンバージョン、click はクリックとして集計されます。
        """
        ctx.initialize()

        metadata_dict = {}
        if metadata:
            try:
                metadata_dict = json.loads(metadata)
            except json.JSONDecodeError as e:
                click.echo(f"[エラー] --metadata のJSONが不正です: {e}", err=True)
                sys.exit(2)
            if not isinstance(metadata_dict, dict):
                click.echo("[エラー] --metadata はJSONオブジェクトで指定してください", err=True)
                sys.exit(2)

        with cli_errors("コンバージョンの記録", ctx.verbose):
            conversion = asyncio.run(
                ctx.manager.record_conversion(
                    test_id,
                    variant_id,
                    session_id,
                    event,
                    value=value,
                    metadata=metadata_dict,
                )
            )
            click.echo(f"コンバージョンを記録しました: {conversion.id} ({event})")
