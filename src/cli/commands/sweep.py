"""
定期スイープコマンド実装

外部スケジューラ（cron など）から個別のスイープを呼び出すか、
`abtest sweep run` で常駐して周期実行する。
"""

import asyncio

import click

from src.cli.utils.errors import cli_errors
from src.cli.utils.output import echo_table
from src.experimentation.clock import AsyncioClock
from src.experimentation.sweep import LoggingSummaryNotifier, PeriodicSweep


def sweep_command(abtest_group, pass_context):
    """sweep コマンドグループを abtest グループに追加"""

    @abtest_group.group()
    def sweep():
        """定期スイープを手動または常駐で実行する"""
        pass

    @sweep.command()
    @pass_context
    def completion(ctx):
        """自動勝者選択が有効な実行中の実験の完了判定を行う"""
        ctx.initialize()

        with cli_errors("完了判定", ctx.verbose):
            report = asyncio.run(_build_sweep(ctx).check_test_completion())

            click.echo("完了判定スイープ:")
            click.echo(f"  対象: {report.checked}件")
            click.echo(f"  完了: {len(report.completed)}件")
            click.echo(f"  エラー: {len(report.failed)}件")
            for test_id in report.completed:
                click.echo(f"  ✓ {test_id}")
            for test_id in report.failed:
                click.echo(f"  ✗ {test_id}")

    @sweep.command()
    @pass_context
    def archive(ctx):
        """保持期間を過ぎた完了済み実験をアーカイブする"""
        ctx.initialize()

        with cli_errors("アーカイブ", ctx.verbose):
            archived = asyncio.run(_build_sweep(ctx).archive_old_tests())
            click.echo(f"アーカイブしました: {archived}件")

    @sweep.command()
    @pass_context
    def summary(ctx):
        """実行中の実験のサマリーを表示する（状態は変更しない）"""
        ctx.initialize()

        with cli_errors("サマリーの生成", ctx.verbose):
            summaries = asyncio.run(_build_sweep(ctx).generate_daily_summary())

            if not summaries:
                click.echo("実行中の実験はありません。")
                return

            echo_table(
                ["ID", "実験", "所有者", "表示", "CV", "勝者"],
                [
                    [
                        s.test_id,
                        s.test_name[:28],
                        s.owner_id,
                        s.total_impressions,
                        s.total_conversions,
                        s.winner_name if s.has_winner else "-",
                    ]
                    for s in summaries
                ],
            )

    @sweep.command()
    @pass_context
    def run(ctx):
        """3つのスイープを常駐して周期実行する（Ctrl+C で終了）"""
        ctx.initialize()

        click.echo(
            "スイープを開始します "
            f"(完了判定: {ctx.config.winner_check_interval_seconds}秒, "
            f"アーカイブ: {ctx.config.archive_interval_seconds}秒, "
            f"サマリー: {ctx.config.summary_interval_seconds}秒)"
        )

        try:
            asyncio.run(_run_forever(ctx))
        except KeyboardInterrupt:
            click.echo("\nスイープを停止しました")


def _build_sweep(ctx, notifier=None) -> PeriodicSweep:
    return PeriodicSweep(
        ctx.manager,
        ctx.store,
        ctx.clock,
        config=ctx.config,
        notifier=notifier,
    )


async def _run_forever(ctx) -> None:
    clock = AsyncioClock()
    sweep = _build_sweep(ctx, notifier=LoggingSummaryNotifier())
    sweep.register(clock)
    try:
        await clock.wait()
    finally:
        clock.stop()
