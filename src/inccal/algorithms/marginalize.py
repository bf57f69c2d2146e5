#########################################################################################
##
##                      TRUNCATED-SVD MARGINALIZATION ENGINE
##                           (algorithms/marginalize.py)
##
##         Splits the trailing block of a Jacobian into observable and
##         unobservable subspaces after eliminating the leading block.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import scipy.linalg as sci_linalg
import scipy.sparse as sci_sparse

from ..backend.linear_solver import qr_tolerance


_EPS = float(np.finfo(float).eps)


def _empty(rows: int = 0, cols: int = 0) -> np.ndarray:
    return np.zeros((rows, cols))


# RESULT ================================================================================

@dataclass
class MarginalizationResult:
    """Spectral description of the marginal block ``A_theta``.

    Attributes
    ----------
    rank, rank_deficiency : int
        Numerical rank of ``A_theta`` and its shortfall from full column rank.
    svd_tolerance : float
        Truncation threshold applied to the analysed spectrum.
    singular_values, singular_values_scaled : np.ndarray
        Full spectra of ``A_theta`` and of its column-normalized version,
        descending.
    obs_basis, obs_basis_scaled : np.ndarray
        Orthonormal bases ``(dim, rank)`` of the observable subspace.
    nobs_basis, nobs_basis_scaled : np.ndarray
        Orthonormal bases ``(dim, dim - rank)`` of the unobservable subspace.
    sigma2_theta, sigma2_theta_scaled : np.ndarray
        Truncated covariance ``V_r diag(s_r⁻²) V_rᵀ`` of theta.
    sigma2_theta_obs, sigma2_theta_obs_scaled : np.ndarray
        Covariance ``diag(s_r⁻²)`` of the observable coordinates ``V_rᵀ theta``.
    column_scales : np.ndarray
        Factors applied to the columns of ``A_theta`` for the scaled variant.
    sv_log2_sum : float
        ``Σ log2(s_i)`` over the retained singular values of the analysed
        spectrum.
    psi_rank : int
        Rank of the eliminated block found during projection.
    """

    rank: int = 0
    rank_deficiency: int = 0
    svd_tolerance: float = 0.0
    singular_values: np.ndarray = field(default_factory=lambda: np.zeros(0))
    singular_values_scaled: np.ndarray = field(default_factory=lambda: np.zeros(0))
    obs_basis: np.ndarray = field(default_factory=_empty)
    obs_basis_scaled: np.ndarray = field(default_factory=_empty)
    nobs_basis: np.ndarray = field(default_factory=_empty)
    nobs_basis_scaled: np.ndarray = field(default_factory=_empty)
    sigma2_theta: np.ndarray = field(default_factory=_empty)
    sigma2_theta_scaled: np.ndarray = field(default_factory=_empty)
    sigma2_theta_obs: np.ndarray = field(default_factory=_empty)
    sigma2_theta_obs_scaled: np.ndarray = field(default_factory=_empty)
    column_scales: np.ndarray = field(default_factory=lambda: np.zeros(0))
    sv_log2_sum: float = 0.0
    psi_rank: int = 0


# HELPERS ===============================================================================

def _project_out(J_psi: np.ndarray, J_theta: np.ndarray, qr_tol: float, eps_qr: float):
    """Remove from ``J_theta`` its component in ``range(J_psi)``."""
    if J_psi.shape[1] == 0 or J_psi.shape[0] == 0:
        return J_theta, 0

    Q, R, _ = sci_linalg.qr(J_psi, mode="economic", pivoting=True)
    tol = qr_tol if qr_tol >= 0.0 else qr_tolerance(J_psi, eps_qr)
    rank = int(np.sum(np.abs(np.diag(R)) > tol))

    Q_r = Q[:, :rank]
    return J_theta - Q_r @ (Q_r.T @ J_theta), rank


def _svd(A: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Singular values and right singular vectors (columns) of *A*."""
    dim = A.shape[1]
    if dim == 0 or A.shape[0] == 0:
        return np.zeros(dim), np.eye(dim)

    _, s, Vt = np.linalg.svd(A, full_matrices=True)
    # pad the spectrum when A has fewer rows than columns
    s_full = np.zeros(dim)
    s_full[:s.size] = s
    return s_full, Vt.T


def _split(s: np.ndarray, V: np.ndarray, rank: int):
    """Bases and covariances for the leading *rank* singular directions."""
    V_r = V[:, :rank]
    inv_sq = 1.0 / s[:rank] ** 2
    obs = V_r.copy()
    nobs = V[:, rank:].copy()
    sigma2 = (V_r * inv_sq) @ V_r.T
    sigma2_obs = np.diag(inv_sq)
    return obs, nobs, sigma2, sigma2_obs


# MARGINALIZATION =======================================================================

def marginalize(
    jacobian_transpose,
    marg_start_index: int,
    *,
    column_scaling: bool = False,
    eps_norm: float = _EPS,
    eps_svd: float = _EPS,
    eps_qr: float = _EPS,
    svd_tol: float = -1.0,
    qr_tol: float = -1.0,
) -> MarginalizationResult:
    """Marginalize the leading columns and analyse the trailing block.

    With ``J = [J_psi  J_theta]`` split at *marg_start_index*, the trailing
    block is projected onto the orthogonal complement of ``range(J_psi)``::

        A_theta = (I - Q_psi Q_psiᵀ) J_theta

    which is the information on theta left after eliminating psi. Its SVD
    yields the observable (``s > svd_tol``) and unobservable subspaces.

    Parameters
    ----------
    jacobian_transpose : array_like or sparse matrix, shape (n_cols, n_rows)
        Transposed weighted Jacobian, marginal columns last.
    marg_start_index : int
        First column of the trailing (theta) block.
    column_scaling : bool
        Analyse the column-normalized ``A_theta``: rank and log-sum are then
        taken from the scaled spectrum.
    eps_norm, eps_svd, eps_qr : float
        See :class:`~inccal.backend.linear_solver.LinearSolverOptions`.
    svd_tol, qr_tol : float
        Explicit tolerances; negative means automatic.

    Returns
    -------
    MarginalizationResult
    """
    if sci_sparse.issparse(jacobian_transpose):
        J = jacobian_transpose.T.toarray()
    else:
        J = np.asarray(jacobian_transpose, dtype=float).T

    n_cols = J.shape[1]
    start = int(marg_start_index)
    if start < 0 or start > n_cols:
        raise ValueError(
            f"marg_start_index {start} out of range for {n_cols} column(s)"
        )

    dim = n_cols - start
    A, psi_rank = _project_out(J[:, :start], J[:, start:], qr_tol, eps_qr)

    # same singular values and right vectors, at most dim rows
    if dim > 0 and A.shape[0] > dim:
        A = sci_linalg.qr(A, mode="r")[0][:dim, :]

    norms = np.linalg.norm(A, axis=0) if A.size else np.zeros(dim)
    scales = np.ones(dim)
    mask = norms > eps_norm
    scales[mask] = 1.0 / norms[mask]
    A_scaled = A * scales

    s, V = _svd(A)
    s_scaled, V_scaled = _svd(A_scaled)

    analysed = s_scaled if column_scaling else s
    s_max = float(analysed[0]) if analysed.size else 0.0
    if svd_tol >= 0.0:
        tol = svd_tol
    else:
        tol = max(A.shape) * s_max * eps_svd if A.size else 0.0
    rank = int(np.sum(analysed > tol))

    obs, nobs, sigma2, sigma2_obs = _split(s, V, rank)
    obs_s, nobs_s, sigma2_s, sigma2_obs_s = _split(s_scaled, V_scaled, rank)

    return MarginalizationResult(
        rank=rank,
        rank_deficiency=dim - rank,
        svd_tolerance=float(tol),
        singular_values=s,
        singular_values_scaled=s_scaled,
        obs_basis=obs,
        obs_basis_scaled=obs_s,
        nobs_basis=nobs,
        nobs_basis_scaled=nobs_s,
        sigma2_theta=sigma2,
        sigma2_theta_scaled=sigma2_s,
        sigma2_theta_obs=sigma2_obs,
        sigma2_theta_obs_scaled=sigma2_obs_s,
        column_scales=scales,
        sv_log2_sum=float(np.sum(np.log2(analysed[:rank]))),
        psi_rank=psi_rank,
    )
