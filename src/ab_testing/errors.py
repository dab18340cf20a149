# A/Bテスト エラー定義
"""
A/Bテストエンジンで送出される例外

全ての例外は ABTestingError を基底とする。
検証エラーは問題のある呼び出しの時点で同期的に送出し、分析時まで遅延させない。
データが無いこと（観測値ゼロなど）はエラーではない。
"""


class ABTestingError(Exception):
    """A/Bテストエンジンの基底例外"""
    pass


class InvalidAllocationError(ABTestingError, ValueError):
    """バリアントの配分が不正な場合のエラー（合計が100でない等）"""
    pass


class DuplicateExperimentError(ABTestingError):
    """同じIDの実験が既に存在する場合のエラー"""
    pass


class ExperimentNotFoundError(ABTestingError, LookupError):
    """実験が見つからない場合のエラー"""
    pass


class VariantNotFoundError(ExperimentNotFoundError):
    """実験内にバリアントが見つからない場合のエラー"""
    pass


class InvalidTransitionError(ABTestingError):
    """許可されていないライフサイクル遷移のエラー"""
    pass


class PersistenceError(ABTestingError):
    """スナップショットの読み込み・保存に失敗した場合のエラー"""
    pass
