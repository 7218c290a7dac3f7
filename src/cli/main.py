#!/usr/bin/env python3
from __future__ import annotations
"""
A/Bテスト実験エンジン CLI メインエントリーポイント

実験の作成・状態遷移・割り当て・コンバージョン記録・結果確認・定期スイープを
ターミナルから操作するための CLI インターフェース。
"""

import asyncio
import logging
import os
import re
import sys
from typing import Optional
from uuid import UUID

import click

from src.cli.config.cli_config import CLIConfig
from src.cli.utils.errors import cli_errors
from src.cli.utils.output import echo_json, echo_table, format_optional, format_percent
from src.cli.utils.yaml_loader import load_yaml, validate_test_definition
from src.config.experiment_config import ExperimentConfig
from src.db.connection import DatabaseConnection
from src.experimentation.clock import AsyncioClock, Clock
from src.experimentation.lifecycle import LifecycleManager
from src.experimentation.models import (
    ABTest,
    CreateTestRequest,
    TestPatch,
    TestStatus,
)
from src.experimentation.store import ExperimentStore, PostgresExperimentStore

# コマンドモジュールインポート
from src.cli.commands.events import events_command
from src.cli.commands.results import results_command
from src.cli.commands.sweep import sweep_command
from src.cli.commands.traffic import traffic_command


SCHEMA_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "../db/schema.sql"))


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.cli_config = CLIConfig()
        self.owner_id: str = self.cli_config.default_owner_id
        self.verbose = False
        self.db: Optional[DatabaseConnection] = None
        self.config: Optional[ExperimentConfig] = None
        self.clock: Optional[Clock] = None
        self.store: Optional[ExperimentStore] = None
        self.manager: Optional[LifecycleManager] = None
        self._initialized = False

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        try:
            self.db = DatabaseConnection()
            self.config = ExperimentConfig()
            self.config.validate()

            self.clock = AsyncioClock()
            self.store = PostgresExperimentStore(self.db)
            self.manager = LifecycleManager(
                self.store,
                config=self.config,
                clock=self.clock,
            )

            self._initialized = True

        except Exception as e:
            click.echo(f"[初期化エラー] システムの初期化に失敗しました: {e}", err=True)
            sys.exit(1)


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version="1.0.0", prog_name="abtest")
@click.option('--owner', 'owner_id', help='実験の所有者ID（環境変数 AB_TEST_OWNER_ID）')
@click.option('--verbose', is_flag=True, help='詳細ログを表示')
@pass_context
def abtest(ctx: CLIContext, owner_id: Optional[str], verbose: bool):
    """
    A/Bテスト実験エンジン CLI

    実験の作成から勝者の決定、アーカイブまでをターミナルから操作できます。
    """
    if owner_id:
        ctx.owner_id = owner_id
    ctx.verbose = verbose
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@abtest.command()
@click.option('--check-only', is_flag=True, help='接続とテーブルの確認のみ（変更なし）')
@pass_context
def init(ctx: CLIContext, check_only: bool):
    """データベースを初期化し、実験テーブルを作成する"""
    ctx.initialize()

    with cli_errors("初期化", ctx.verbose):
        if not ctx.db.health_check():
            click.echo("[エラー] データベースに接続できません", err=True)
            sys.exit(1)
        click.echo("✓ データベースに接続しました")

        table_names = _load_schema_table_names()
        with ctx.db.get_connection() as conn:
            existing_tables = _fetch_existing_tables(conn)

        missing_tables = [t for t in table_names if t not in existing_tables]
        if not missing_tables:
            click.echo("✓ 必要なテーブルが存在します")
            return

        click.echo(f"⚠ 必要なテーブルが不足しています: {', '.join(missing_tables)}", err=True)
        if check_only:
            return

        with ctx.db.get_connection() as conn:
            _apply_schema(conn)
        click.echo("✓ スキーマを適用しました")


@abtest.command()
@click.argument('definition_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--start', 'start_now', is_flag=True, help='作成後すぐに開始する')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
@pass_context
def create(ctx: CLIContext, definition_file: str, start_now: bool, output_format: str):
    """YAML定義から実験を作成する"""
    ctx.initialize()

    with cli_errors("実験の作成", ctx.verbose):
        data = load_yaml(definition_file)
        validate_test_definition(data)
        request = CreateTestRequest.from_dict(data)

        test = asyncio.run(ctx.manager.create(ctx.owner_id, request))
        if start_now:
            test = asyncio.run(ctx.manager.start(test.id))

        if output_format == 'json':
            echo_json(test.to_dict())
            return

        click.echo(f"実験を作成しました: {test.id}")
        _echo_variants(test)
        if start_now:
            click.echo("\n実験を開始しました。")


@abtest.command(name='list')
@click.option('--status', type=click.Choice([s.value for s in TestStatus] + ['all']), default='all', help='ステータスでフィルタ')
@click.option('--limit', type=int, default=None, help='最大件数')
@click.option('--all-owners', is_flag=True, help='すべての所有者の実験を表示')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
@pass_context
def list_tests(ctx: CLIContext, status: str, limit: Optional[int], all_owners: bool, output_format: str):
    """実験の一覧を表示する"""
    ctx.initialize()

    if limit is not None and not 0 < limit <= ctx.cli_config.max_list_limit:
        click.echo(f"[エラー] --limit は 1〜{ctx.cli_config.max_list_limit} で指定してください", err=True)
        sys.exit(2)

    with cli_errors("実験一覧の取得", ctx.verbose):
        tests = asyncio.run(
            ctx.manager.list(
                owner_id=None if all_owners else ctx.owner_id,
                status=None if status == 'all' else TestStatus(status),
                limit=limit,
            )
        )

        if output_format == 'json':
            echo_json([t.to_dict() for t in tests])
            return

        if not tests:
            click.echo("実験はありません。")
            click.echo("\nヒント: abtest create <test.yaml> で実験を作成してください")
            return

        click.echo(f"実験 ({len(tests)}件):\n")
        rows = []
        for test in tests:
            winner = test.get_variant(test.winner_id) if test.winner_id else None
            rows.append([
                test.id,
                test.name[:28],
                test.type.value,
                test.status.value,
                len(test.variants),
                winner.name if winner else "-",
            ])
        echo_table(["ID", "名前", "種類", "状態", "バリアント数", "勝者"], rows)


@abtest.command()
@click.argument('test_id', type=click.UUID)
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
@pass_context
def show(ctx: CLIContext, test_id: UUID, output_format: str):
    """実験の詳細を表示する"""
    ctx.initialize()

    with cli_errors("実験の取得", ctx.verbose):
        test = asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))

        if output_format == 'json':
            echo_json(test.to_dict())
            return

        click.echo(f"[{test.id}] {test.name}")
        if test.description:
            click.echo(f"  説明: {test.description}")
        click.echo(f"  種類: {test.type.value}")
        click.echo(f"  状態: {test.status.value}")
        click.echo(f"  主要指標: {test.primary_metric.value}")
        click.echo(f"  信頼水準: {test.confidence_level}")
        click.echo(f"  最小サンプル数: {test.min_sample_size}")
        click.echo(f"  自動勝者選択: {'有効' if test.auto_select_winner else '無効'}")
        click.echo(f"  開始: {format_optional(test.start_date)}")
        click.echo(f"  終了: {format_optional(test.end_date)}")
        click.echo("")
        _echo_variants(test)


@abtest.command()
@click.argument('test_id', type=click.UUID)
@click.option('--name', help='実験名')
@click.option('--description', help='説明')
@click.option('--status', type=click.Choice([s.value for s in TestStatus]), help='ステータス')
@click.option('--min-sample-size', type=int, help='最小サンプル数')
@click.option('--auto-select/--no-auto-select', 'auto_select_winner', default=None, help='勝者を自動選択するか')
@click.option('--end-date', type=click.DateTime(), help='終了日時')
@pass_context
def update(
    ctx: CLIContext,
    test_id: UUID,
    name: Optional[str],
    description: Optional[str],
    status: Optional[str],
    min_sample_size: Optional[int],
    auto_select_winner: Optional[bool],
    end_date,
):
    """実験の設定を更新する"""
    ctx.initialize()

    patch = TestPatch(
        name=name,
        description=description,
        status=TestStatus(status) if status else None,
        min_sample_size=min_sample_size,
        auto_select_winner=auto_select_winner,
        end_date=end_date,
    )
    if not patch.to_fields():
        click.echo("[エラー] 更新する項目を指定してください", err=True)
        sys.exit(2)

    with cli_errors("実験の更新", ctx.verbose):
        asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))
        test = asyncio.run(ctx.manager.update(test_id, patch))
        click.echo(f"実験を更新しました: {test.id} ({test.status.value})")


@abtest.command()
@click.argument('test_id', type=click.UUID)
@pass_context
def start(ctx: CLIContext, test_id: UUID):
    """実験を開始する"""
    ctx.initialize()

    with cli_errors("実験の開始", ctx.verbose):
        asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))
        test = asyncio.run(ctx.manager.start(test_id))
        click.echo(f"実験を開始しました: {test.id}")


@abtest.command()
@click.argument('test_id', type=click.UUID)
@pass_context
def pause(ctx: CLIContext, test_id: UUID):
    """実験を一時停止する"""
    ctx.initialize()

    with cli_errors("実験の一時停止", ctx.verbose):
        asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))
        test = asyncio.run(ctx.manager.pause(test_id))
        click.echo(f"実験を一時停止しました: {test.id}")


@abtest.command()
@click.argument('test_id', type=click.UUID)
@click.option('--winner', 'winner_id', type=click.UUID, help='勝者バリアントID（省略時は統計的に判定）')
@pass_context
def complete(ctx: CLIContext, test_id: UUID, winner_id: Optional[UUID]):
    """実験を完了する"""
    ctx.initialize()

    with cli_errors("実験の完了", ctx.verbose):
        asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))
        test = asyncio.run(ctx.manager.complete(test_id, winner_id))

        click.echo(f"実験を完了しました: {test.id}")
        winner = test.get_variant(test.winner_id) if test.winner_id else None
        if winner:
            click.echo(f"  勝者: {winner.name} ({winner.id})")
        else:
            click.echo("  勝者: なし")


@abtest.command()
@click.argument('test_id', type=click.UUID)
@click.option('--yes', is_flag=True, help='確認せずに削除する')
@pass_context
def delete(ctx: CLIContext, test_id: UUID, yes: bool):
    """実験を削除する（割り当て・コンバージョンも削除）"""
    ctx.initialize()

    with cli_errors("実験の削除", ctx.verbose):
        test = asyncio.run(ctx.manager.get(test_id, owner_id=ctx.owner_id))

        if not yes and not click.confirm(f"実験 '{test.name}' を削除します。続行しますか？"):
            click.echo("削除をキャンセルしました")
            return

        asyncio.run(ctx.manager.delete(test_id))
        click.echo(f"実験を削除しました: {test_id}")


def _echo_variants(test: ABTest) -> None:
    rows = []
    for variant in test.variants:
        rows.append([
            variant.id,
            variant.name[:28],
            f"{variant.traffic_allocation:g}%",
            "✓" if variant.is_control else "",
            variant.impressions,
            variant.conversions,
            format_percent(variant.conversion_rate),
        ])
    echo_table(["ID", "バリアント", "配分", "コントロール", "表示", "CV", "CV率"], rows)


def _load_schema_table_names() -> list[str]:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        sql = f.read()
    return re.findall(r"CREATE TABLE(?:\s+IF NOT EXISTS)?\s+([a-zA-Z0-9_]+)", sql)


def _fetch_existing_tables(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
        )
        return {row[0] for row in cur.fetchall()}


def _apply_schema(conn) -> None:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        sql = f.read()
    with conn.cursor() as cur:
        cur.execute(sql)
    conn.commit()


# 各コマンドを追加
traffic_command(abtest, pass_context)
events_command(abtest, pass_context)
results_command(abtest, pass_context)
sweep_command(abtest, pass_context)


if __name__ == '__main__':
    abtest()
