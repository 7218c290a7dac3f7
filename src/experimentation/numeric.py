# 数値計算プリミティブ
"""
統計分析で使う純粋関数

- 正規分布CDF（Abramowitz-Stegun 7.1.26 の有理近似）
- 信頼水準 → z値の対応表
- 正規・ガンマ・ベータ分布からのサンプリング

サンプリング関数は乱数源（random.Random）を引数で受け取り、
モジュール内に状態を持たない。シード付きの乱数源を渡せば結果は再現可能。
"""

import math
import random
from typing import Dict

# Abramowitz-Stegun 7.1.26 の係数
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

# 信頼水準 → 両側 z 値
Z_SCORES: Dict[float, float] = {
    0.80: 1.282,
    0.85: 1.44,
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}

DEFAULT_Z_SCORE = 1.96


def normal_cdf(x: float) -> float:
    """標準正規分布の累積分布関数（近似、最大誤差 1.5e-7）"""
    sign = -1.0 if x < 0 else 1.0
    x = abs(x) / math.sqrt(2.0)

    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - ((((_A5 * t + _A4) * t + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)

    return 0.5 * (1.0 + sign * y)


def z_score(confidence_level: float) -> float:
    """信頼水準に対応する z 値を取得

    小数第2位に丸めて対応表を引く。表にない水準は 1.96 を返す。
    """
    rounded = round(confidence_level * 100) / 100
    return Z_SCORES.get(rounded, DEFAULT_Z_SCORE)


def normal_sample(rng: random.Random) -> float:
    """Box-Muller 法で標準正規分布からサンプリング"""
    # log(0) を避けるため u1 は (0, 1]
    u1 = 1.0 - rng.random()
    u2 = rng.random()
    return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


def gamma_sample(shape: float, rng: random.Random) -> float:
    """Marsaglia-Tsang 法でガンマ分布（scale=1）からサンプリング

    Args:
        shape: 形状パラメータ（> 0）
        rng: 乱数源

    Raises:
        ValueError: shape が正でない場合
    """
    if shape <= 0:
        raise ValueError(f"shape must be positive, got {shape}")

    if shape < 1:
        # Gamma(a) = Gamma(1 + a) * U^(1/a)
        u = 1.0 - rng.random()
        return gamma_sample(1.0 + shape, rng) * u ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)

    while True:
        x = normal_sample(rng)
        v = 1.0 + c * x
        while v <= 0:
            x = normal_sample(rng)
            v = 1.0 + c * x

        v = v * v * v
        u = 1.0 - rng.random()

        if u < 1.0 - 0.0331 * x ** 4:
            return d * v
        if math.log(u) < 0.5 * x * x + d * (1.0 - v + math.log(v)):
            return d * v


def beta_sample(alpha: float, beta: float, rng: random.Random) -> float:
    """2つのガンマサンプルの比でベータ分布からサンプリング"""
    x = gamma_sample(alpha, rng)
    y = gamma_sample(beta, rng)
    return x / (x + y)
