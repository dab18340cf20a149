# A/Bテスト バリアント割り当て
"""
VariantAssigner: 被験者をバリアントに決定論的に割り当てる

"{experiment_id}:{subject_id}" の MD5 ハッシュを 100 で割った余りをバケットとし、
バリアントの配分を定義順に累積した範囲に当てはめる。

- 一貫性: 同じ (実験, 被験者) は実験の存続期間中、プロセス再起動後も同じバリアント
- 割り当ての保存不要: ハッシュは入力のみの純粋関数（カウンタや乱数は使わない）
- 均一性: 被験者が十分多ければ、各バリアントの比率は配分に収束する
"""

import hashlib
import logging
from typing import List

from src.ab_testing.models import Variant
from src.ab_testing.registry import ExperimentRegistry


logger = logging.getLogger(__name__)

BUCKET_COUNT = 100


def bucket_for(experiment_id: str, subject_id: str) -> int:
    """(実験ID, 被験者ID) から [0, 100) のバケットを計算"""
    hash_input = f"{experiment_id}:{subject_id}"
    hash_value = int(hashlib.md5(hash_input.encode("utf-8")).hexdigest(), 16)
    return hash_value % BUCKET_COUNT


def select_variant(variants: List[Variant], bucket: int) -> Variant:
    """累積配分でバケットを含むバリアントを選択

    配分 0 のバリアントは選ばれない。浮動小数点誤差で最後まで届かなかった場合は
    配分が正の最後のバリアントを返す。
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.allocation
        if bucket < cumulative:
            return variant

    # フォールバック（浮動小数点の誤差対策）
    for variant in reversed(variants):
        if variant.allocation > 0:
            return variant
    return variants[-1]


class VariantAssigner:
    """レジストリの現在の配分に基づくバリアント割り当て

    使用例:
        assigner = VariantAssigner(registry)
        variant = assigner.assign_variant("checkout_button", "user_123")
        render(variant.config)
    """

    def __init__(self, registry: ExperimentRegistry):
        self.registry = registry

    def assign_variant(self, experiment_id: str, subject_id: str) -> Variant:
        """被験者にバリアントを割り当てる

        Args:
            experiment_id: 実験ID
            subject_id: 被験者（ユーザー）ID

        Returns:
            割り当てられたバリアント（コピー）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        variants = self.registry.get_variants(experiment_id)
        bucket = bucket_for(experiment_id, subject_id)
        variant = select_variant(variants, bucket)
        logger.debug(
            "Assigned %s to %s in %s (bucket=%d)",
            subject_id, variant.id, experiment_id, bucket,
        )
        return variant
