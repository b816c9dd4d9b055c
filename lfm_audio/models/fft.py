"""General-length discrete Fourier transform.

Powers of two use an iterative radix-2 plan. Any other length is
computed with Bluestein's chirp-z algorithm, which rewrites the DFT as a
circular convolution of power-of-two length ``m >= 2n - 1`` and evaluates
that convolution with the radix-2 plan.

Plans precompute their twiddle/chirp tables and are cached per length.
All transforms act on the last axis and broadcast over leading axes.
Normalisation follows ``numpy.fft`` with ``norm="backward"``: the forward
transform is unscaled and the inverse is scaled by ``1/n``.
"""

from functools import lru_cache

import numpy as np


def _is_power_of_two(n: int) -> bool:
    return n > 0 and (n & (n - 1)) == 0


def _bit_reverse_permutation(n: int) -> np.ndarray:
    bits = n.bit_length() - 1
    idx = np.arange(n)
    rev = np.zeros(n, dtype=np.int64)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    return rev


class Radix2Plan:
    """Iterative decimation-in-time FFT for ``n = 2**p``."""

    def __init__(self, n: int):
        if not _is_power_of_two(n):
            raise ValueError(f"Radix-2 plan needs a power of two, got {n}")
        self.n = n
        self.permutation = _bit_reverse_permutation(n)
        self.twiddles = []
        size = 2
        while size <= n:
            half = size // 2
            self.twiddles.append(np.exp(-2j * np.pi * np.arange(half) / size))
            size *= 2

    def __call__(self, x: np.ndarray, inverse: bool = False) -> np.ndarray:
        """Unscaled transform. ``inverse`` flips the twiddle sign only."""
        lead = x.shape[:-1]
        x = np.asarray(x, dtype=np.complex128)[..., self.permutation]

        size = 2
        for twiddle in self.twiddles:
            half = size // 2
            # Each block of ``size`` holds the half-length transforms of
            # the even and odd samples side by side.
            blocks = x.reshape(*lead, self.n // size, size)
            even = blocks[..., :half]
            odd = blocks[..., half:] * (twiddle.conj() if inverse else twiddle)
            x = np.concatenate([even + odd, even - odd], axis=-1)
            size *= 2

        return x.reshape(*lead, self.n)


class BluesteinPlan:
    """Chirp-z DFT for arbitrary ``n``."""

    def __init__(self, n: int):
        if n <= 0:
            raise ValueError(f"Transform length must be positive, got {n}")
        self.n = n
        self.m = 1 << (2 * n - 2).bit_length()
        self.inner = get_plan(self.m)

        # k^2 mod 2n keeps the chirp phase small for large k.
        k = np.arange(n)
        self.chirp = np.exp(-1j * np.pi * ((k * k) % (2 * n)) / n)

        kernel = np.zeros(self.m, dtype=np.complex128)
        kernel[:n] = self.chirp.conj()
        kernel[self.m - n + 1:] = self.chirp[1:].conj()[::-1]
        self.kernel_spectrum = self.inner(kernel)

    def __call__(self, x: np.ndarray, inverse: bool = False) -> np.ndarray:
        x = np.asarray(x, dtype=np.complex128)
        if inverse:
            return self(x.conj()).conj()

        padded = np.zeros(x.shape[:-1] + (self.m,), dtype=np.complex128)
        padded[..., : self.n] = x * self.chirp
        conv = self.inner(self.inner(padded) * self.kernel_spectrum, inverse=True) / self.m
        return conv[..., : self.n] * self.chirp


@lru_cache(maxsize=64)
def get_plan(n: int) -> Radix2Plan | BluesteinPlan:
    """Cached plan for transforms of length ``n``."""
    if _is_power_of_two(n):
        return Radix2Plan(n)
    return BluesteinPlan(n)


def fft(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x)
    return get_plan(x.shape[-1])(x)


def ifft(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x)
    n = x.shape[-1]
    return get_plan(n)(x, inverse=True) / n


def irfft(spectrum: np.ndarray, n: int | None = None) -> np.ndarray:
    """Real inverse transform of a one-sided spectrum of ``n // 2 + 1`` bins."""
    spectrum = np.asarray(spectrum, dtype=np.complex128)
    if n is None:
        n = 2 * (spectrum.shape[-1] - 1)
    bins = n // 2 + 1
    if spectrum.shape[-1] < bins:
        raise ValueError(f"Need {bins} bins for n={n}, got {spectrum.shape[-1]}")

    full = np.empty(spectrum.shape[:-1] + (n,), dtype=np.complex128)
    full[..., :bins] = spectrum[..., :bins]
    # Conjugate-symmetric upper half: X[n - k] = conj(X[k]).
    full[..., bins:] = spectrum[..., 1 : n - bins + 1].conj()[..., ::-1]
    return ifft(full).real
