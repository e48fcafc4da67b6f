# =============================================================================
# sampling.py — Random variate primitives for the revenue simulation
#
# Every draw goes through an explicit RandomSource instead of a process-global
# generator. A run gets one source; workers and sensitivity scenarios get
# children spawned from it, so a seeded forecast is reproducible end to end
# and parallel chunks never share a stream.
#
# The samplers are scalar on purpose: the iteration model branches per deal
# and per month, so each call draws exactly the variates it needs. Uniforms
# are pulled from NumPy in blocks to keep the per-draw overhead low.
# =============================================================================

import math
from typing import List, Optional, Tuple, Union

import numpy as np

# Floor for the uniform that goes into log() in Box-Muller, avoids -inf.
_LOG_EPSILON = 1e-10

# Marsaglia-Tsang acceptance attempts before giving up.
_GAMMA_MAX_ATTEMPTS = 1000

_BETA_FLOOR = 0.01
_BETA_CEILING = 0.99


class RandomSource:
    """
    Seedable stream of Uniform[0, 1) draws.

    Wraps a NumPy Generator built from a SeedSequence. Pass an int for a
    reproducible stream, None for OS entropy, or a SeedSequence (e.g. one
    spawned for a worker process).
    """

    def __init__(
        self,
        seed: Union[int, np.random.SeedSequence, None] = None,
        buffer_size: int = 4096,
    ):
        if isinstance(seed, np.random.SeedSequence):
            self.seed_sequence = seed
        else:
            self.seed_sequence = np.random.SeedSequence(seed)
        self._generator = np.random.default_rng(self.seed_sequence)
        self._buffer_size = buffer_size
        self._buffer: List[float] = []
        self._index = 0

    def uniform(self) -> float:
        if self._index >= len(self._buffer):
            self._buffer = self._generator.random(self._buffer_size).tolist()
            self._index = 0
        value = self._buffer[self._index]
        self._index += 1
        return value

    def spawn(self, n: int) -> List["RandomSource"]:
        """Independent child streams, one per worker or scenario."""
        return [RandomSource(child, self._buffer_size) for child in self.seed_sequence.spawn(n)]

    def replicate(self) -> "RandomSource":
        """A fresh source that replays this source's stream from the start."""
        twin = np.random.SeedSequence(
            entropy=self.seed_sequence.entropy,
            spawn_key=self.seed_sequence.spawn_key,
            pool_size=self.seed_sequence.pool_size,
        )
        return RandomSource(twin, self._buffer_size)


def sample_normal(rng: RandomSource, mu: float, sigma: float) -> float:
    """Box-Muller transform."""
    u1 = max(rng.uniform(), _LOG_EPSILON)
    u2 = rng.uniform()
    z = math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)
    return mu + sigma * z


def sample_log_normal(rng: RandomSource, mu: float, sigma: float) -> float:
    return math.exp(sample_normal(rng, mu, sigma))


def sample_gamma(rng: RandomSource, shape: float) -> float:
    """
    Gamma(shape, 1) via Marsaglia and Tsang.

    Shapes below 1 use the boost gamma(1 + shape) * U^(1/shape). If no
    candidate is accepted within 1000 attempts the mode-like value
    d = shape - 1/3 is returned. That fallback is deterministic and biased;
    in practice it needs roughly 1000 consecutive rejections, which the
    acceptance rate (> 95% for shape >= 1) makes vanishingly rare.
    """
    if shape < 1:
        return sample_gamma(rng, 1.0 + shape) * rng.uniform() ** (1.0 / shape)

    d = shape - 1.0 / 3.0
    c = 1.0 / math.sqrt(9.0 * d)
    for _ in range(_GAMMA_MAX_ATTEMPTS):
        z = sample_normal(rng, 0.0, 1.0)
        v = (1.0 + c * z) ** 3
        if v <= 0:
            continue
        u = rng.uniform()
        if u < 1.0 - 0.0331 * (z * z) * (z * z):
            return d * v
        if u <= 0 or math.log(u) < 0.5 * z * z + d * (1.0 - v + math.log(v)):
            return d * v
    return d


def sample_beta(rng: RandomSource, alpha: float, beta: float) -> float:
    """
    Beta(alpha, beta) as X / (X + Y) with X ~ Gamma(alpha), Y ~ Gamma(beta).

    Results are clamped to [0.01, 0.99]. Non-positive parameters return 0.5
    and Beta(1, 1) is a plain uniform draw.
    """
    if alpha <= 0 or beta <= 0:
        return 0.5
    if alpha == 1 and beta == 1:
        return rng.uniform()

    x = sample_gamma(rng, alpha)
    y = sample_gamma(rng, beta)
    total = x + y
    if total == 0:
        return 0.5
    return max(_BETA_FLOOR, min(_BETA_CEILING, x / total))


def sample_bernoulli(rng: RandomSource, p: float) -> bool:
    return rng.uniform() < p


def beta_mean_and_sd(alpha: float, beta: float) -> Tuple[float, float]:
    """Analytic mean and standard deviation of Beta(alpha, beta)."""
    total = alpha + beta
    if alpha <= 0 or beta <= 0:
        return 0.5, 0.0
    mean = alpha / total
    variance = (alpha * beta) / (total * total * (total + 1.0))
    return mean, math.sqrt(variance)


def resolve_random_source(rng: Optional[RandomSource], seed: Optional[int] = None) -> RandomSource:
    """Use the caller's source when given, otherwise start a new stream."""
    return rng if rng is not None else RandomSource(seed)
