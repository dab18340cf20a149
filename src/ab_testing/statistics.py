# A/Bテスト 統計関数
"""
仮説検定・信頼区間・サンプルサイズ計算の純粋関数群

ビジネスロジック（実験・バリアントの概念）は含まない。
分布関数は scipy.stats を使用する。

- 比率（0/1）指標: 2標本比率の z 検定（プールした比率で標準誤差を計算）
- 連続値指標: Welch の t 検定（等分散を仮定しない、Welch–Satterthwaite 自由度）
- サンプルサイズ: 2標本比率検定の標準式（正規近似）
"""

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from scipy import stats


@dataclass
class Summary:
    """標本の要約統計量（分散は不偏分散）"""
    count: int
    sum: float
    mean: float
    variance: float
    standard_deviation: float
    min_value: Optional[float]
    max_value: Optional[float]


@dataclass
class TestOutcome:
    """2標本検定の結果

    Attributes:
        test_type: "z-test" または "t-test"
        statistic: 検定統計量（実験群 - 対照群 の向き）
        p_value: 両側 p 値
        standard_error: 差の信頼区間に使う標準誤差（非プール）
        critical_value: 信頼水準に対応する臨界値
        degrees_of_freedom: t 検定の自由度（z 検定では None）
    """
    test_type: str
    statistic: float
    p_value: float
    standard_error: float
    critical_value: float
    degrees_of_freedom: Optional[float] = None


def summarize(values: Sequence[float]) -> Summary:
    """標本の要約統計量を計算

    1件以下、または全て同じ値の場合、分散・標準偏差はちょうど 0（NaN にしない）。
    """
    n = len(values)
    if n == 0:
        return Summary(0, 0.0, 0.0, 0.0, 0.0, None, None)

    total = math.fsum(values)
    mean = total / n
    min_value = min(values)
    max_value = max(values)

    if n < 2 or min_value == max_value:
        variance = 0.0
    else:
        variance = math.fsum((x - mean) ** 2 for x in values) / (n - 1)

    return Summary(
        count=n,
        sum=total,
        mean=mean,
        variance=variance,
        standard_deviation=math.sqrt(variance),
        min_value=min_value,
        max_value=max_value,
    )


def is_binary(values: Iterable[float]) -> bool:
    """全ての値が 0 または 1 かどうか（空の場合は False）"""
    seen = False
    for value in values:
        if value not in (0, 1):
            return False
        seen = True
    return seen


def z_critical(confidence_level: float) -> float:
    """両側信頼区間の正規分布臨界値 z_{1-α/2}"""
    _check_probability(confidence_level, "confidence_level")
    return float(stats.norm.ppf(1.0 - (1.0 - confidence_level) / 2.0))


def t_critical(confidence_level: float, degrees_of_freedom: float) -> float:
    """両側信頼区間の t 分布臨界値"""
    _check_probability(confidence_level, "confidence_level")
    return float(stats.t.ppf(1.0 - (1.0 - confidence_level) / 2.0, degrees_of_freedom))


def two_proportion_z_test(
    control_successes: float,
    control_total: int,
    treatment_successes: float,
    treatment_total: int,
    confidence_level: float = 0.95,
) -> TestOutcome:
    """2標本比率の z 検定

    p = (x1 + x2) / (n1 + n2)
    SE = sqrt(p(1 - p)(1/n1 + 1/n2))
    z = (p2 - p1) / SE

    Raises:
        ValueError: どちらかの標本サイズが 0 以下の場合
    """
    if control_total <= 0 or treatment_total <= 0:
        raise ValueError("Both groups need at least one observation")

    p1 = control_successes / control_total
    p2 = treatment_successes / treatment_total
    pooled = (control_successes + treatment_successes) / (control_total + treatment_total)

    se_pooled = math.sqrt(
        pooled * (1.0 - pooled) * (1.0 / control_total + 1.0 / treatment_total)
    )
    if se_pooled > 0:
        z = (p2 - p1) / se_pooled
        p_value = float(2.0 * stats.norm.sf(abs(z)))
    else:
        z, p_value = 0.0, 1.0

    # 差の信頼区間は非プールの標準誤差を使う
    se_diff = math.sqrt(
        p1 * (1.0 - p1) / control_total + p2 * (1.0 - p2) / treatment_total
    )

    return TestOutcome(
        test_type="z-test",
        statistic=float(z),
        p_value=p_value,
        standard_error=se_diff,
        critical_value=z_critical(confidence_level),
    )


def welch_degrees_of_freedom(
    control_variance: float,
    control_total: int,
    treatment_variance: float,
    treatment_total: int,
) -> float:
    """Welch–Satterthwaite の自由度

    両群とも分散 0 の場合は n1 + n2 - 2（最低 1）を返す。
    """
    a = control_variance / control_total
    b = treatment_variance / treatment_total
    denominator = 0.0
    if control_total > 1:
        denominator += a ** 2 / (control_total - 1)
    if treatment_total > 1:
        denominator += b ** 2 / (treatment_total - 1)
    if denominator == 0:
        return float(max(control_total + treatment_total - 2, 1))
    return (a + b) ** 2 / denominator


def welch_t_test(
    control: Summary,
    treatment: Summary,
    confidence_level: float = 0.95,
) -> TestOutcome:
    """Welch の t 検定（等分散を仮定しない2標本検定）

    t = (mean2 - mean1) / sqrt(var1/n1 + var2/n2)
    標準誤差が 0 の場合は t = 0, p = 1 とする。

    Raises:
        ValueError: どちらかの標本が空の場合
    """
    if control.count <= 0 or treatment.count <= 0:
        raise ValueError("Both groups need at least one observation")

    se = math.sqrt(
        control.variance / control.count + treatment.variance / treatment.count
    )
    df = welch_degrees_of_freedom(
        control.variance, control.count, treatment.variance, treatment.count
    )

    if se > 0 and control.count > 1 and treatment.count > 1:
        t, p_value = stats.ttest_ind_from_stats(
            treatment.mean, treatment.standard_deviation, treatment.count,
            control.mean, control.standard_deviation, control.count,
            equal_var=False,
        )
        p_value = float(p_value)
    elif se > 0:
        # 1件だけの群があると scipy の自由度が定義されないため直接計算する
        t = (treatment.mean - control.mean) / se
        p_value = float(2.0 * stats.t.sf(abs(t), df))
    else:
        t, p_value = 0.0, 1.0

    return TestOutcome(
        test_type="t-test",
        statistic=float(t),
        p_value=p_value,
        standard_error=se,
        critical_value=t_critical(confidence_level, df),
        degrees_of_freedom=float(df),
    )


def required_sample_size(
    baseline_rate: float,
    min_detectable_effect: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """2標本比率検定で必要な1群あたりのサンプルサイズ

    p1 = baseline_rate, p2 = baseline_rate + min_detectable_effect（絶対差）
    n = (z_{1-α/2} sqrt(2 p̄ (1 - p̄)) + z_{power} sqrt(p1(1-p1) + p2(1-p2)))^2 / (p2 - p1)^2

    Args:
        baseline_rate: 対照群のコンバージョン率（0-1）
        min_detectable_effect: 検出したい絶対差
        alpha: 有意水準（両側）
        power: 検出力

    Returns:
        1群あたりの必要サンプルサイズ（切り上げ）

    Raises:
        ValueError: 入力が範囲外の場合
    """
    _check_probability(baseline_rate, "baseline_rate")
    _check_probability(alpha, "alpha")
    _check_probability(power, "power")
    if min_detectable_effect == 0:
        raise ValueError("min_detectable_effect must be non-zero")

    p1 = baseline_rate
    p2 = baseline_rate + min_detectable_effect
    if not 0.0 < p2 < 1.0:
        raise ValueError(
            f"baseline_rate + min_detectable_effect must be in (0, 1), got {p2}"
        )

    p_bar = (p1 + p2) / 2.0
    z_alpha = float(stats.norm.ppf(1.0 - alpha / 2.0))
    z_beta = float(stats.norm.ppf(power))

    numerator = (
        z_alpha * math.sqrt(2.0 * p_bar * (1.0 - p_bar))
        + z_beta * math.sqrt(p1 * (1.0 - p1) + p2 * (1.0 - p2))
    ) ** 2
    return int(math.ceil(numerator / (p2 - p1) ** 2))


def _check_probability(value: float, name: str) -> None:
    if not 0.0 < value < 1.0:
        raise ValueError(f"{name} must be in (0, 1), got {value}")
