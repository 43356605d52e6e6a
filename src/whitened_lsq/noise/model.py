# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""
Noise models: whitening transforms for residuals and Jacobians.

A noise model turns a weighted least-squares term into an ordinary one.
For a residual r with covariance Σ and square-root information R
(RᵀR = Σ⁻¹):

    whiten(r)        = R r
    unwhiten(y)      = R⁻¹ y
    mahalanobis(r)   = ‖R r‖² = rᵀ Σ⁻¹ r
    whiten_matrix(H) = R H          (every column whitened like a residual)

so that a whitened Jacobian and whitened residual form a unit-weight linear
least-squares problem.

Hierarchy
---------
NoiseModel                 abstract capability set
└── Gaussian               full upper-triangular R
    └── Diagonal           R = diag(1/σ), applied elementwise
        ├── Constrained    σ may be 0: hard equality constraints
        └── Isotropic      σ shared by all components
            └── Unit       σ = 1, identity whitening

Each variant only overrides what it can do more cheaply. Optimizer code
depends on the `NoiseModel` methods alone.

Construction
------------
Models are built through the static factories (``Gaussian.from_covariance``,
``Diagonal.from_sigmas``, ``Constrained.mixed``, ``Isotropic.from_sigma``,
``Unit.create``, ...) and are never mutated afterwards, so one instance can be
shared by any number of factors.

Hard constraints
----------------
`Constrained.whiten` returns 0 on a zero-sigma component whose residual is
exactly 0 and ±inf (``INFEASIBLE`` with the residual's sign) otherwise. The
squared cost is then 0 for satisfied and inf for violated constraints, never
NaN. There is no linear map that whitens a Jacobian row with zero sigma, so
`Constrained.whiten_matrix` raises `UnsupportedOperation`; solvers must send
those rows through an equality-constrained solve instead.

In-place variants
-----------------
JAX arrays are immutable. The ``*_in_place`` methods therefore operate on
writable float ``numpy.ndarray`` buffers and raise ``TypeError`` otherwise.
"""

from __future__ import annotations

import abc
import math
from typing import Optional, Tuple

import numpy as np
from jax.scipy.linalg import solve_triangular

from whitened_lsq.core.config import equal_with_abs_tol, get_config, resolve_tol
from whitened_lsq.core.errors import (
    DimensionMismatch,
    SingularModel,
    UnsupportedOperation,
    check_dim,
)
from whitened_lsq.core.jax_init import jnp
from whitened_lsq.core.logging_config import get_logger

logger = get_logger(__name__)

INFEASIBLE = math.inf


def _as_vector(v, what: str) -> jnp.ndarray:
    v = jnp.asarray(v, dtype=jnp.float64)
    if v.ndim != 1:
        raise DimensionMismatch(f"{what}: expected a vector, got shape {v.shape}")
    return v


def _as_matrix(H, what: str) -> jnp.ndarray:
    H = jnp.asarray(H, dtype=jnp.float64)
    if H.ndim != 2:
        raise DimensionMismatch(f"{what}: expected a matrix, got shape {H.shape}")
    return H


def _as_square(M, what: str) -> jnp.ndarray:
    M = _as_matrix(M, what)
    if M.shape[0] != M.shape[1]:
        raise DimensionMismatch(f"{what}: expected a square matrix, got shape {M.shape}")
    if not bool(jnp.all(jnp.isfinite(M))):
        raise ValueError(f"{what}: entries must be finite")
    return M


def _as_symmetric(M, what: str) -> jnp.ndarray:
    M = _as_square(M, what)
    scale = max(1.0, float(jnp.max(jnp.abs(M))))
    if not bool(jnp.allclose(M, M.T, rtol=0.0, atol=1e-9 * scale)):
        raise ValueError(f"{what}: matrix is not symmetric")
    return 0.5 * (M + M.T)


def _upper_cholesky(M: jnp.ndarray, what: str) -> jnp.ndarray:
    """Upper-triangular R with RᵀR = M, or SingularModel if M is not SPD."""
    # jnp.linalg.cholesky reports failure with NaNs instead of raising
    L = jnp.linalg.cholesky(M)
    if not bool(jnp.all(jnp.isfinite(L))):
        raise SingularModel(f"{what} is not positive definite")
    return L.T


def _require_writable(buf, what: str) -> None:
    if not isinstance(buf, np.ndarray) or not buf.flags.writeable:
        raise TypeError(f"{what} needs a writable numpy.ndarray (JAX arrays are immutable)")
    if not np.issubdtype(buf.dtype, np.floating):
        raise TypeError(f"{what} needs a floating point buffer, got {buf.dtype}")


class NoiseModel(abc.ABC):
    """
    Abstract noise model over residuals of length ``dim``.

    Subclasses implement `whiten`, `unwhiten`, `whiten_matrix` and `equals`.
    Everything else has a generic definition in terms of those.
    """

    def __init__(self, dim: int) -> None:
        dim = int(dim)
        if dim <= 0:
            raise ValueError(f"noise model dimension must be positive, got {dim}")
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    @property
    def is_constrained(self) -> bool:
        return False

    def _check_vector(self, v) -> jnp.ndarray:
        v = _as_vector(v, type(self).__name__)
        check_dim(self._dim, v.shape[0], f"{type(self).__name__} vector")
        return v

    def _check_matrix(self, H) -> jnp.ndarray:
        H = _as_matrix(H, type(self).__name__)
        check_dim(self._dim, H.shape[0], f"{type(self).__name__} matrix rows")
        return H

    @abc.abstractmethod
    def whiten(self, v) -> jnp.ndarray:
        """Normalize an error vector."""

    @abc.abstractmethod
    def unwhiten(self, v) -> jnp.ndarray:
        """Map a whitened vector back to measurement units."""

    @abc.abstractmethod
    def whiten_matrix(self, H) -> jnp.ndarray:
        """Whiten every column of a Jacobian."""

    @abc.abstractmethod
    def equals(self, other: "NoiseModel", tol: Optional[float] = None) -> bool:
        ...

    def mahalanobis(self, v) -> jnp.ndarray:
        """Squared norm of the whitened vector, <whiten(v), whiten(v)>."""
        w = self.whiten(v)
        return jnp.dot(w, w)

    def whiten_in_place(self, v: np.ndarray) -> None:
        _require_writable(v, "whiten_in_place")
        v[...] = np.asarray(self.whiten(v))

    def unwhiten_in_place(self, v: np.ndarray) -> None:
        _require_writable(v, "unwhiten_in_place")
        v[...] = np.asarray(self.unwhiten(v))

    def whiten_matrix_in_place(self, H: np.ndarray) -> None:
        _require_writable(H, "whiten_matrix_in_place")
        H[...] = np.asarray(self.whiten_matrix(H))

    def whiten_system(self, A, b) -> Tuple[jnp.ndarray, jnp.ndarray]:
        """Whiten a linear system A x ≈ b, returning the whitened (A, b)."""
        return self.whiten_matrix(A), self.whiten(b)


class Gaussian(NoiseModel):
    """
    General Gaussian noise with square-root information matrix R.

    R is expected to be upper-triangular (that is what the covariance and
    information factories produce); `unwhiten` then back-substitutes. A
    non-triangular R passed to `from_sqrt_information` is kept as given and
    unwhitened with a general solve.
    """

    def __init__(self, sqrt_information) -> None:
        R = _as_square(sqrt_information, "sqrt_information")
        super().__init__(R.shape[0])
        self._R = R
        self._upper = bool(jnp.all(jnp.tril(R, -1) == 0.0))
        self._check_nonsingular()

    def _check_nonsingular(self) -> None:
        tol = get_config().singular_tol
        if self._upper:
            smallest = float(jnp.min(jnp.abs(jnp.diag(self._R))))
            if smallest <= tol:
                raise SingularModel(
                    f"square-root information has a zero diagonal entry ({smallest:g})"
                )
        else:
            s = jnp.linalg.svd(self._R, compute_uv=False)
            if float(s[-1]) <= tol * max(1.0, float(s[0])):
                raise SingularModel("square-root information matrix is singular")

    # --- factories ---

    @staticmethod
    def from_sqrt_information(R) -> "Gaussian":
        model = Gaussian(R)
        logger.debug("Gaussian.from_sqrt_information dim=%d", model.dim)
        return model

    @staticmethod
    def from_covariance(covariance) -> "Gaussian":
        """R = chol(Σ⁻¹)ᵀ, an upper-triangular inverse square root of Σ."""
        S = _as_symmetric(covariance, "covariance")
        info = jnp.linalg.solve(S, jnp.eye(S.shape[0]))
        if not bool(jnp.all(jnp.isfinite(info))):
            raise SingularModel("covariance matrix is singular")
        model = Gaussian(_upper_cholesky(0.5 * (info + info.T), "covariance"))
        logger.debug("Gaussian.from_covariance dim=%d", model.dim)
        return model

    @staticmethod
    def from_information(information) -> "Gaussian":
        """R = chol(Q)ᵀ."""
        Q = _as_symmetric(information, "information")
        model = Gaussian(_upper_cholesky(Q, "information"))
        logger.debug("Gaussian.from_information dim=%d", model.dim)
        return model

    # --- accessors ---

    @property
    def R(self) -> jnp.ndarray:
        """Square-root information matrix. `whiten_matrix(H)` is cheaper than R @ H."""
        return self._R

    @property
    def information(self) -> jnp.ndarray:
        R = self.R
        return R.T @ R

    @property
    def covariance(self) -> jnp.ndarray:
        return jnp.linalg.inv(self.information)

    # --- whitening ---

    def whiten(self, v) -> jnp.ndarray:
        return self._R @ self._check_vector(v)

    def unwhiten(self, v) -> jnp.ndarray:
        v = self._check_vector(v)
        if self._upper:
            return solve_triangular(self._R, v, lower=False)
        return jnp.linalg.solve(self._R, v)

    def whiten_matrix(self, H) -> jnp.ndarray:
        return self._R @ self._check_matrix(H)

    def equals(self, other: NoiseModel, tol: Optional[float] = None) -> bool:
        """
        Compare square-root information matrices.

        The tolerance is square-rooted first since R carries square-rooted
        information units.
        """
        if not isinstance(other, Gaussian) or other.dim != self.dim:
            return False
        return equal_with_abs_tol(self.R, other.R, math.sqrt(resolve_tol(tol)))

    def __repr__(self) -> str:
        return f"Gaussian(dim={self.dim}, R={np.asarray(self._R).tolist()})"


class Diagonal(Gaussian):
    """
    Diagonal covariance given by standard deviations σ.

    Logically R = diag(1/σ); the matrix is never formed for whitening.
    """

    def __init__(self, sigmas) -> None:
        sigmas = _as_vector(sigmas, "sigmas")
        NoiseModel.__init__(self, sigmas.shape[0])
        self._validate_sigmas(sigmas)
        self._sigmas = sigmas
        self._invsigmas = 1.0 / sigmas

    def _validate_sigmas(self, sigmas: jnp.ndarray) -> None:
        if not bool(jnp.all(jnp.isfinite(sigmas))):
            raise ValueError("sigmas must be finite")
        if bool(jnp.any(sigmas < 0.0)):
            raise ValueError("sigmas must be non-negative")
        if bool(jnp.any(sigmas <= get_config().singular_tol)):
            raise SingularModel(
                "zero sigma requires a Constrained noise model (use Constrained.mixed)"
            )

    # --- factories ---

    @staticmethod
    def from_sigmas(sigmas) -> "Diagonal":
        model = Diagonal(sigmas)
        logger.debug("Diagonal.from_sigmas dim=%d", model.dim)
        return model

    @staticmethod
    def from_variances(variances) -> "Diagonal":
        variances = _as_vector(variances, "variances")
        if bool(jnp.any(variances < 0.0)):
            raise ValueError("variances must be non-negative")
        return Diagonal.from_sigmas(jnp.sqrt(variances))

    @staticmethod
    def from_precisions(precisions) -> "Diagonal":
        precisions = _as_vector(precisions, "precisions")
        if bool(jnp.any(precisions <= 0.0)):
            raise ValueError("precisions must be positive")
        return Diagonal.from_variances(1.0 / precisions)

    # --- accessors ---

    @property
    def sigmas(self) -> jnp.ndarray:
        return self._sigmas

    @property
    def invsigmas(self) -> jnp.ndarray:
        return self._invsigmas

    def sigma(self, i: int) -> float:
        return float(self._sigmas[i])

    @property
    def R(self) -> jnp.ndarray:
        return jnp.diag(self._invsigmas)

    @property
    def information(self) -> jnp.ndarray:
        return jnp.diag(self._invsigmas * self._invsigmas)

    @property
    def covariance(self) -> jnp.ndarray:
        return jnp.diag(self._sigmas * self._sigmas)

    # --- whitening ---

    def whiten(self, v) -> jnp.ndarray:
        return self._check_vector(v) * self._invsigmas

    def unwhiten(self, v) -> jnp.ndarray:
        return self._check_vector(v) * self._sigmas

    def whiten_matrix(self, H) -> jnp.ndarray:
        return self._check_matrix(H) * self._invsigmas[:, None]

    def whiten_matrix_in_place(self, H: np.ndarray) -> None:
        _require_writable(H, "whiten_matrix_in_place")
        self._check_matrix(H)
        H *= np.asarray(self._invsigmas)[:, None]

    def __repr__(self) -> str:
        return f"Diagonal(sigmas={np.asarray(self._sigmas).tolist()})"


class Constrained(Diagonal):
    """
    Diagonal model where some (or all) sigmas are exactly zero.

    Zero-sigma components are hard equality constraints: whitening maps a
    satisfied component (residual exactly 0) to 0 and a violated one to
    ±inf. This is the only Gaussian-family model whose R may be singular.
    """

    def _validate_sigmas(self, sigmas: jnp.ndarray) -> None:
        if not bool(jnp.all(jnp.isfinite(sigmas))):
            raise ValueError("sigmas must be finite")
        if bool(jnp.any(sigmas < 0.0)):
            raise ValueError("sigmas must be non-negative")

    @staticmethod
    def mixed(sigmas) -> "Constrained":
        model = Constrained(sigmas)
        logger.debug(
            "Constrained.mixed dim=%d constrained_rows=%d",
            model.dim,
            int(jnp.sum(model.constrained_mask)),
        )
        return model

    @staticmethod
    def all_constrained(dim: int) -> "Constrained":
        dim = int(dim)
        if dim <= 0:
            raise ValueError(f"noise model dimension must be positive, got {dim}")
        return Constrained.mixed(jnp.zeros(dim))

    @property
    def is_constrained(self) -> bool:
        return True

    @property
    def constrained_mask(self) -> jnp.ndarray:
        """True on the rows with zero sigma."""
        return self._sigmas == 0.0

    def whiten(self, v) -> jnp.ndarray:
        v = self._check_vector(v)
        hard = self.constrained_mask
        scaled = v / jnp.where(hard, 1.0, self._sigmas)
        sentinel = jnp.where(v == 0.0, 0.0, jnp.copysign(INFEASIBLE, v))
        return jnp.where(hard, sentinel, scaled)

    def unwhiten(self, v) -> jnp.ndarray:
        v = self._check_vector(v)
        return jnp.where(self.constrained_mask, 0.0, v * self._sigmas)

    def whiten_matrix(self, H) -> jnp.ndarray:
        raise UnsupportedOperation(
            "Constrained noise model cannot whiten a Jacobian; "
            "zero-sigma rows must be handled as hard equality constraints"
        )

    def whiten_matrix_in_place(self, H: np.ndarray) -> None:
        raise UnsupportedOperation(
            "Constrained noise model cannot whiten a Jacobian; "
            "zero-sigma rows must be handled as hard equality constraints"
        )

    def __repr__(self) -> str:
        return f"Constrained(sigmas={np.asarray(self._sigmas).tolist()})"


class Isotropic(Diagonal):
    """Diagonal model with one sigma shared by every component."""

    def __init__(self, dim: int, sigma: float) -> None:
        dim = int(dim)
        if dim <= 0:
            raise ValueError(f"noise model dimension must be positive, got {dim}")
        sigma = float(sigma)
        super().__init__(jnp.full((dim,), sigma))
        self._sigma = sigma
        self._invsigma = 1.0 / sigma

    @staticmethod
    def from_sigma(dim: int, sigma: float) -> "Isotropic":
        model = Isotropic(dim, sigma)
        logger.debug("Isotropic.from_sigma dim=%d sigma=%g", model.dim, model.sigma)
        return model

    @staticmethod
    def from_variance(dim: int, variance: float) -> "Isotropic":
        if variance < 0.0:
            raise ValueError("variance must be non-negative")
        return Isotropic.from_sigma(dim, math.sqrt(variance))

    @staticmethod
    def from_precision(dim: int, precision: float) -> "Isotropic":
        if precision <= 0.0:
            raise ValueError("precision must be positive")
        return Isotropic.from_variance(dim, 1.0 / precision)

    @property
    def sigma(self) -> float:
        return self._sigma

    @property
    def invsigma(self) -> float:
        return self._invsigma

    def mahalanobis(self, v) -> jnp.ndarray:
        v = self._check_vector(v)
        return jnp.dot(v, v) * (self._invsigma * self._invsigma)

    def whiten(self, v) -> jnp.ndarray:
        return self._check_vector(v) * self._invsigma

    def unwhiten(self, v) -> jnp.ndarray:
        return self._check_vector(v) * self._sigma

    def whiten_matrix(self, H) -> jnp.ndarray:
        return self._check_matrix(H) * self._invsigma

    def whiten_matrix_in_place(self, H: np.ndarray) -> None:
        _require_writable(H, "whiten_matrix_in_place")
        self._check_matrix(H)
        H *= self._invsigma

    def __repr__(self) -> str:
        return f"Isotropic(dim={self.dim}, sigma={self._sigma:g})"


class Unit(Isotropic):
    """
    Unit-variance noise on every component; all whitening is the identity.

    Linear factors whose weighting is already baked into their blocks carry
    a Unit model.
    """

    def __init__(self, dim: int) -> None:
        super().__init__(dim, 1.0)

    @staticmethod
    def create(dim: int) -> "Unit":
        return Unit(dim)

    def mahalanobis(self, v) -> jnp.ndarray:
        v = self._check_vector(v)
        return jnp.dot(v, v)

    def whiten(self, v) -> jnp.ndarray:
        return self._check_vector(v)

    def unwhiten(self, v) -> jnp.ndarray:
        return self._check_vector(v)

    def whiten_matrix(self, H) -> jnp.ndarray:
        return self._check_matrix(H)

    def whiten_matrix_in_place(self, H: np.ndarray) -> None:
        _require_writable(H, "whiten_matrix_in_place")
        self._check_matrix(H)

    def __repr__(self) -> str:
        return f"Unit(dim={self.dim})"
