# A/Bテスト実験エンジンのエラー定義
"""
実験エンジンのエラー分類

- 入力検証エラー（配分合計、バリアント数）
- 対象が見つからないエラー
- 状態遷移・終了済み実験の変更エラー
- 実行中でない実験への割り当てエラー

統計量がゼロサンプルで計算できない場合はエラーにせず、
中立的なデフォルト値（SE=0, CI=(0, 0), p=1）を返す。
"""


class ExperimentError(Exception):
    """実験エンジンの基底エラー"""
    pass


class ExperimentValidationError(ExperimentError, ValueError):
    """入力値が不正な場合のエラー"""
    pass


class ExperimentNotFoundError(ExperimentError):
    """実験・バリアントが見つからない場合のエラー"""
    pass


class ExperimentStateError(ExperimentError):
    """実験の状態が操作を許可しない場合のエラー"""
    pass


class ExperimentUnavailableError(ExperimentError):
    """実験が割り当てを受け付けない場合のエラー（存在しない・実行中でない）"""
    pass
