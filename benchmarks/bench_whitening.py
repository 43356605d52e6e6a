# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.

import time

import jax
import jax.numpy as jnp

from whitened_lsq.noise.model import Constrained, Diagonal, Gaussian, Isotropic, Unit


def build_models(dim: int):
    """
    One model per variant, all of dimension ``dim``:

      - Gaussian from a random SPD covariance
      - Diagonal with sigmas in [0.5, 1.5]
      - Constrained with every other sigma zero
      - Isotropic (sigma 0.3) and Unit
    """
    key = jax.random.PRNGKey(0)
    k1, k2 = jax.random.split(key)
    M = jax.random.normal(k1, (dim, dim))
    cov = M @ M.T + dim * jnp.eye(dim)
    sigmas = 0.5 + jax.random.uniform(k2, (dim,))
    mixed = jnp.where(jnp.arange(dim) % 2 == 0, 0.0, sigmas)

    return {
        "Gaussian": Gaussian.from_covariance(cov),
        "Diagonal": Diagonal.from_sigmas(sigmas),
        "Constrained": Constrained.mixed(mixed),
        "Isotropic": Isotropic.from_sigma(dim, 0.3),
        "Unit": Unit.create(dim),
    }


def _time(fn, *args, repeats: int):
    out = fn(*args)
    out.block_until_ready()  # warmup / compile
    t0 = time.time()
    for _ in range(repeats):
        out = fn(*args)
    out.block_until_ready()
    return (time.time() - t0) / repeats


def run_benchmark(dim: int = 64, cols: int = 32, repeats: int = 200):
    print("=== Whitening Benchmark ===")
    print(f"dim = {dim}, jacobian cols = {cols}, repeats = {repeats}")

    v = jnp.linspace(-1.0, 1.0, dim)
    H = jnp.ones((dim, cols))

    for name, model in build_models(dim).items():
        whiten = jax.jit(model.whiten)
        mahalanobis = jax.jit(model.mahalanobis)
        t_vec = _time(whiten, v, repeats=repeats)
        t_mah = _time(mahalanobis, v, repeats=repeats)

        if model.is_constrained:
            mat = "n/a (hard rows)"
        else:
            t_mat = _time(jax.jit(model.whiten_matrix), H, repeats=repeats)
            mat = f"{t_mat * 1e6:8.2f} us"

        print(
            f"{name:12s} whiten {t_vec * 1e6:8.2f} us | "
            f"mahalanobis {t_mah * 1e6:8.2f} us | whiten_matrix {mat}"
        )


if __name__ == "__main__":
    run_benchmark()
