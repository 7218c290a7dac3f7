"""
実験結果コマンド実装
"""

import asyncio
from uuid import UUID

import click

from src.cli.utils.errors import cli_errors
from src.cli.utils.output import echo_json, echo_table, format_optional, format_percent
from src.experimentation.models import TestResult


def results_command(abtest_group, pass_context):
    """results コマンドを abtest グループに追加"""

    @abtest_group.command()
    @click.argument('test_id', type=click.UUID)
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @pass_context
    def results(ctx, test_id: UUID, output_format: str):
        """実験の統計結果と推奨事項を表示する"""
        ctx.initialize()

        with cli_errors("結果の取得", ctx.verbose):
            result = asyncio.run(ctx.manager.get_results(test_id, owner_id=ctx.owner_id))

            if output_format == 'json':
                echo_json(result.to_dict())
                return

            _display_results(result)


def _display_results(result: TestResult) -> None:
    """結果を表形式で表示する"""
    click.echo(f"[{result.test_id}] {result.test_name} ({result.status.value})")
    click.echo(
        f"  表示: {result.total_impressions} / CV: {result.total_conversions} / "
        f"信頼水準: {result.confidence_level}\n"
    )

    rows = []
    for variant in result.variants:
        lower, upper = variant.confidence_interval
        rows.append([
            ("* " if variant.is_control else "  ") + variant.variant_name[:24],
            variant.impressions,
            variant.conversions,
            format_percent(variant.conversion_rate),
            f"{format_percent(lower)}〜{format_percent(upper)}",
            format_percent(variant.relative_improvement, digits=1),
            "-" if variant.p_value is None else f"{variant.p_value:.4f}",
            "-" if variant.is_significant is None else ("✓" if variant.is_significant else ""),
            format_percent(variant.probability_to_be_best, digits=1),
        ])
    echo_table(
        ["バリアント", "表示", "CV", "CV率", "信頼区間", "改善率", "p値", "有意", "最良確率"],
        rows,
    )
    click.echo("  (* はコントロール)")

    click.echo("")
    click.echo(f"勝者: {result.winner_name if result.has_winner else 'なし'}")
    click.echo(f"検出力: {format_percent(result.statistical_power, digits=1)}")
    if result.sample_ratio_p_value is not None:
        click.echo(f"配分の整合性 p値: {result.sample_ratio_p_value:.4f}")
    if not result.has_winner:
        click.echo(f"有意到達までの推定日数: {format_optional(result.days_to_significance)}")
    click.echo("")
    click.echo(f"推奨: {result.recommendation}")
