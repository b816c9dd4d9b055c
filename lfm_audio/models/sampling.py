"""Sampling from decoder and depthformer logits."""

import numpy as np


def softmax(logits: np.ndarray, temperature: float = 1.0) -> np.ndarray:
    """Numerically stable softmax of ``logits / temperature``."""
    scaled = np.asarray(logits, dtype=np.float64) / temperature
    scaled -= scaled.max()
    probs = np.exp(scaled)
    probs /= probs.sum()
    return probs


def multinomial_sample_one(probs: np.ndarray, rng: np.random.Generator) -> int:
    """First index whose cumulative mass exceeds a uniform draw."""
    cdf = np.cumsum(probs)
    idx = int(np.searchsorted(cdf, rng.random() * cdf[-1], side="right"))
    # Rounding can leave the draw at exactly the total mass.
    return min(idx, len(probs) - 1)


def sample_token(
    logits: np.ndarray,
    temperature: float,
    rng: np.random.Generator,
) -> int:
    """Greedy at ``temperature <= 0``, otherwise temperature sampling."""
    if temperature <= 0:
        return int(np.argmax(logits))
    return multinomial_sample_one(softmax(logits, temperature), rng)


def sample_top_k(
    logits: np.ndarray,
    temperature: float,
    top_k: int,
    rng: np.random.Generator,
) -> int:
    """Sample among the ``top_k`` largest logits."""
    if temperature <= 0:
        return int(np.argmax(logits))

    logits = np.asarray(logits)
    k = min(top_k, logits.shape[-1])
    if k == logits.shape[-1]:
        return multinomial_sample_one(softmax(logits, temperature), rng)

    # Partial selection, order of the survivors does not matter.
    top = np.argpartition(logits, -k)[-k:]
    probs = softmax(logits[top], temperature)
    return int(top[multinomial_sample_one(probs, rng)])
