"""Error reporting helpers for CLI commands."""

from __future__ import annotations

import sys
import traceback
from contextlib import contextmanager
from typing import Iterator

import click

from src.cli.utils.yaml_loader import YamlValidationError
from src.experimentation.errors import ExperimentError


@contextmanager
def cli_errors(action: str, verbose: bool = False) -> Iterator[None]:
    """コマンド実行中の例外を終了コードに変換する

    - 入力・状態のエラー（ExperimentError、YAML検証エラー）: 終了コード 2
    - それ以外: 終了コード 1
    """
    try:
        yield
    except (ExperimentError, YamlValidationError) as e:
        click.echo(f"[エラー] {e}", err=True)
        sys.exit(2)
    except Exception as e:
        click.echo(f"[エラー] {action}に失敗しました: {e}", err=True)
        if verbose:
            click.echo(traceback.format_exc(), err=True)
        sys.exit(1)
