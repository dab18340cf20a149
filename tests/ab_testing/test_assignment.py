# VariantAssigner テスト
"""
バリアント割り当ての単体テスト

検証観点:
- 決定論: 同じ (実験, 被験者) は常に同じバリアント
- 配分への収束: 70/30 の実験で 500 人以上の被験者が概ね配分通りに分かれる
- 配分 0 のバリアントは選ばれない
"""

import hashlib

import pytest

from src.ab_testing.assignment import VariantAssigner, bucket_for, select_variant
from src.ab_testing.errors import ExperimentNotFoundError
from src.ab_testing.models import Variant
from src.ab_testing.registry import ExperimentRegistry


@pytest.fixture
def registry():
    registry = ExperimentRegistry()
    registry.create_experiment({
        "id": "split_70_30",
        "name": "70/30 split",
        "primary_metric": "conversion",
        "variants": [
            {"id": "control", "name": "Control", "allocation": 70},
            {"id": "treatment", "name": "Treatment", "allocation": 30},
        ],
    })
    return registry


@pytest.fixture
def assigner(registry):
    return VariantAssigner(registry)


class TestBucketFor:
    """bucket_for 関数のテスト"""

    def test_matches_md5_of_joined_ids(self):
        """バケットは "{experiment_id}:{subject_id}" の MD5 を 100 で割った余り"""
        expected = int(hashlib.md5(b"exp:user_1").hexdigest(), 16) % 100
        assert bucket_for("exp", "user_1") == expected

    def test_range(self):
        for i in range(200):
            assert 0 <= bucket_for("exp", f"user_{i}") < 100


class TestSelectVariant:
    """select_variant 関数のテスト"""

    def test_cumulative_ranges(self):
        variants = [Variant("a", "A", 20), Variant("b", "B", 30), Variant("c", "C", 50)]
        assert select_variant(variants, 0).id == "a"
        assert select_variant(variants, 19).id == "a"
        assert select_variant(variants, 20).id == "b"
        assert select_variant(variants, 49).id == "b"
        assert select_variant(variants, 50).id == "c"
        assert select_variant(variants, 99).id == "c"

    def test_zero_allocation_never_selected(self):
        variants = [Variant("a", "A", 0), Variant("b", "B", 100), Variant("c", "C", 0)]
        assert {select_variant(variants, b).id for b in range(100)} == {"b"}

    def test_fallback_when_rounding_short(self):
        """累積が100に届かない場合は配分が正の最後のバリアント"""
        variants = [Variant("a", "A", 49.5), Variant("b", "B", 49.5), Variant("c", "C", 0)]
        assert select_variant(variants, 99).id == "b"


class TestAssignVariant:
    """assign_variant メソッドのテスト"""

    def test_deterministic(self, assigner):
        """同じ被験者は何度呼んでも同じバリアント"""
        first = assigner.assign_variant("split_70_30", "user_42").id
        for _ in range(20):
            assert assigner.assign_variant("split_70_30", "user_42").id == first

    def test_stable_across_instances(self, registry):
        """別インスタンス（プロセス再起動相当）でも同じ結果"""
        a = VariantAssigner(registry).assign_variant("split_70_30", "user_7").id
        b = VariantAssigner(registry).assign_variant("split_70_30", "user_7").id
        assert a == b

    def test_split_converges_to_allocation(self, assigner):
        """70/30 の実験で 1000 人の対照群比率が 58-82% に収まる"""
        counts = {"control": 0, "treatment": 0}
        for i in range(1000):
            counts[assigner.assign_variant("split_70_30", f"user_{i}").id] += 1

        control_share = counts["control"] / 1000
        assert 0.58 <= control_share <= 0.82
        assert counts["treatment"] > 0

    def test_assigns_regardless_of_status(self, registry, assigner):
        """draft や終了済みでも割り当ては行われる"""
        before = assigner.assign_variant("split_70_30", "user_1").id
        registry.stop_experiment("split_70_30")
        assert assigner.assign_variant("split_70_30", "user_1").id == before

    def test_unknown_experiment(self, assigner):
        with pytest.raises(ExperimentNotFoundError):
            assigner.assign_variant("missing", "user_1")

    def test_returns_copy(self, registry, assigner):
        variant = assigner.assign_variant("split_70_30", "user_1")
        variant.config["mutated"] = True
        assert all(not v.config for v in registry.get_experiment("split_70_30").variants)
