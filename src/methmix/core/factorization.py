#!/usr/bin/env python
# coding: utf-8


"""
Reference-free cell-mixture factorization of DNA methylation data.

Implements the Houseman-style alternating constrained least-squares \
factorization (RefFreeCellMix) of a probe × sample intensity matrix \
``Y ≈ Mu · Omegaᵀ`` where

- ``Omega`` (samples × K) holds non-negative mixing proportions whose rows \
sum to *at most* one, and
- ``Mu`` (probes × K) holds per-cell-type methylation signatures bounded \
by [0, 1].

Features
--------
- Constrained projection of every subject onto a fixed basis via scipy \
(NNLS, bounded least squares, and simplex-constrained SLSQP), ignoring \
missing values per subject
- Optional parallel projection via joblib for large probe sets
- Initialization of Mu from hierarchical clustering of samples
- Single-K fits with per-iteration convergence summaries
- Sweeps over a range of K sharing one clustering tree
- Finalization of Mu on a second intensity matrix (e.g. all probes) \
without changing Omega
"""


from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

import joblib
import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.optimize import lsq_linear, minimize, nnls

from methmix.utils.logger import logger

ArrayLike = Union[np.ndarray, pd.DataFrame]

# hierarchical clustering beyond this many samples needs explicit consent
MAX_CLUSTER_SAMPLES = 2500


def _as_array(Y: ArrayLike) -> np.ndarray:
    return Y.to_numpy(dtype=float) if isinstance(Y, pd.DataFrame) else np.asarray(Y, dtype=float)


def _solve_simplex_ls(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Least squares with ``x >= 0`` and ``sum(x) <= 1``.

    The NNLS solution is returned when it already satisfies the sum
    constraint; otherwise the sum constraint is active and SLSQP solves the
    problem on the face ``sum(x) = 1`` starting from the rescaled NNLS point.
    """
    x, _ = nnls(A, b)
    total = x.sum()
    if total <= 1.0:
        return x

    k = A.shape[1]
    AtA = A.T @ A
    Atb = A.T @ b
    res = minimize(
        lambda z: 0.5 * z @ AtA @ z - Atb @ z,
        x0=x / total,
        jac=lambda z: AtA @ z - Atb,
        bounds=[(0.0, None)] * k,
        constraints=[
            {"type": "ineq", "fun": lambda z: 1.0 - z.sum(), "jac": lambda z: -np.ones(k)}
        ],
        method="SLSQP",
        options={"ftol": 1e-12, "maxiter": 500},
    )
    sol = np.clip(res.x, 0.0, None)
    # guard against tiny SLSQP constraint violations
    if sol.sum() > 1.0:
        sol = sol / sol.sum()
    return sol


def _project_columns(
    Y: np.ndarray,
    X: np.ndarray,
    cols: Iterable[int],
    mode: str,
) -> np.ndarray:
    cols = np.asarray(list(cols), dtype=int)
    out = np.full((len(cols), X.shape[1]), np.nan)
    if len(cols) == 0:
        return out
    Ysub = Y[:, cols]

    # Complete columns share one design: solve them unconstrained in a batch
    # and keep every solution that already satisfies the constraints.
    complete = ~np.isnan(Ysub).any(axis=0)
    pending = np.flatnonzero(~complete)
    if complete.any():
        batch = np.linalg.lstsq(X, Ysub[:, complete], rcond=None)[0].T
        if mode == "simplex":
            ok = (batch >= 0).all(axis=1) & (batch.sum(axis=1) <= 1.0)
        elif mode == "box":
            ok = ((batch >= 0) & (batch <= 1)).all(axis=1)
        elif mode == "nonneg":
            ok = (batch >= 0).all(axis=1)
        else:
            ok = np.ones(len(batch), dtype=bool)
        idx = np.flatnonzero(complete)
        out[idx[ok]] = batch[ok]
        pending = np.sort(np.concatenate([pending, idx[~ok]]))

    for row in pending:
        y = Ysub[:, row]
        obs = ~np.isnan(y)
        if obs.sum() == 0:
            continue
        A = X[obs]
        b = y[obs]
        if mode == "simplex":
            out[row] = _solve_simplex_ls(A, b)
        elif mode == "box":
            out[row] = lsq_linear(A, b, bounds=(0.0, 1.0), method="bvls").x
        elif mode == "nonneg":
            out[row] = nnls(A, b)[0]
        else:
            out[row] = np.linalg.lstsq(A, b, rcond=None)[0]
    return out


def project_mix(
    Y: ArrayLike,
    X: ArrayLike,
    nonnegative: bool = True,
    sum_less_than_one: bool = True,
    less_than_one: Optional[bool] = None,
    n_jobs: int = 1,
) -> np.ndarray:
    """
    Project each column of ``Y`` onto the columns of ``X``.

    For every subject ``i`` (column of ``Y``) solve
    ``min_b ||X[obs] b - Y[obs, i]||²`` over the rows observed for that subject,
    subject to:

    - ``sum_less_than_one``: ``b >= 0`` and ``sum(b) <= 1``
    - otherwise ``less_than_one``: ``0 <= b <= 1``
    - otherwise ``b >= 0``

    With ``nonnegative=False`` the fit is unconstrained.

    Parameters
    ----------
    Y : np.ndarray or pd.DataFrame
        Features × subjects matrix. NaN entries are skipped per subject.
    X : np.ndarray or pd.DataFrame
        Features × K basis (must not contain NaN).
    nonnegative : bool, default True
        Apply the constraints above.
    sum_less_than_one : bool, default True
        Constrain coefficients to the (sub-)simplex.
    less_than_one : bool, optional
        Constrain coefficients to [0, 1]; defaults to ``not sum_less_than_one``.
    n_jobs : int, default 1
        joblib workers; subjects are split into contiguous chunks.

    Returns
    -------
    np.ndarray
        Subjects × K coefficient matrix. Subjects with no observed value get NaN.

    Raises
    ------
    ValueError
        On mismatched shapes or NaN in ``X``.
    """
    Y = _as_array(Y)
    X = _as_array(X)
    if Y.ndim != 2 or X.ndim != 2:
        raise ValueError("Y and X must be two-dimensional")
    if Y.shape[0] != X.shape[0]:
        raise ValueError(
            f"Feature mismatch: Y has {Y.shape[0]} rows, X has {X.shape[0]}"
        )
    if np.isnan(X).any():
        raise ValueError("Basis matrix X contains missing values")
    if less_than_one is None:
        less_than_one = not sum_less_than_one

    if not nonnegative:
        mode = "free"
    elif sum_less_than_one:
        mode = "simplex"
    elif less_than_one:
        mode = "box"
    else:
        mode = "nonneg"

    n_subj = Y.shape[1]
    if n_jobs == 1 or n_subj < 2:
        return _project_columns(Y, X, range(n_subj), mode)

    n_workers = joblib.effective_n_jobs(n_jobs)
    chunks = [c for c in np.array_split(np.arange(n_subj), n_workers) if len(c)]
    with joblib.Parallel(n_jobs=n_jobs) as par:
        parts = par(
            joblib.delayed(_project_columns)(Y, X, range(c[0], c[-1] + 1), mode)
            for c in chunks
        )
    return np.vstack(parts)


def _project_signatures(Y: np.ndarray, omega: np.ndarray, n_jobs: int = 1) -> np.ndarray:
    """Mu step: regress each probe on Omega, using samples with a fitted Omega row."""
    keep = ~np.isnan(omega).any(axis=1)
    if not keep.any():
        raise ValueError("No sample has observed values; cannot estimate Mu")
    return project_mix(Y[:, keep].T, omega[keep], sum_less_than_one=False, n_jobs=n_jobs)


def _sample_linkage(Y: np.ndarray, method: str, large_ok: bool) -> np.ndarray:
    n = Y.shape[1]
    if n > MAX_CLUSTER_SAMPLES and not large_ok:
        raise ValueError(
            f"{n} samples exceed {MAX_CLUSTER_SAMPLES}; hierarchical clustering "
            "would be very slow. Pass large_ok=True to proceed anyway."
        )
    # median-impute per probe so distances are defined
    filled = np.where(np.isnan(Y), np.nanmedian(Y, axis=1, keepdims=True), Y)
    filled = np.nan_to_num(filled, nan=0.5)
    return linkage(filled.T, method=method, metric="euclidean")


def initialize_mu(
    Y: ArrayLike,
    k: int,
    linkage_matrix: Optional[np.ndarray] = None,
    method: str = "ward",
    large_ok: bool = False,
) -> np.ndarray:
    """
    Initial Mu from hierarchical clustering of samples.

    Samples are clustered (Euclidean distance), the tree is cut into ``k``
    groups, and each column of the result is the mean profile of one group.

    Parameters
    ----------
    Y : np.ndarray or pd.DataFrame
        Probes × samples intensity matrix.
    k : int
        Number of cell types.
    linkage_matrix : np.ndarray, optional
        Precomputed scipy linkage of the samples (re-used across K).
    method : str, default "ward"
        Linkage method when ``linkage_matrix`` is not supplied.
    large_ok : bool, default False
        Allow clustering more than 2500 samples.

    Returns
    -------
    np.ndarray
        Probes × k matrix.
    """
    Y = _as_array(Y)
    n = Y.shape[1]
    if not 1 <= k <= n:
        raise ValueError(f"k must be between 1 and the number of samples ({n})")
    if linkage_matrix is None:
        linkage_matrix = _sample_linkage(Y, method, large_ok)
    labels = fcluster(linkage_matrix, t=k, criterion="maxclust")
    groups = np.unique(labels)
    if len(groups) < k:
        logger.warning(
            f"Clustering produced {len(groups)} groups for k={k}; "
            "splitting the largest groups"
        )
        labels = _force_k_groups(labels, k)
        groups = np.unique(labels)
    with np.errstate(invalid="ignore"):
        mu = np.column_stack([np.nanmean(Y[:, labels == g], axis=1) for g in groups])
        # groups with no observation of a probe take that probe's overall mean
        mu = np.where(np.isnan(mu), np.nanmean(Y, axis=1, keepdims=True), mu)
    return mu


def _force_k_groups(labels: np.ndarray, k: int) -> np.ndarray:
    """Split the largest groups until ``k`` distinct labels exist (tied heights)."""
    labels = labels.copy()
    next_label = labels.max() + 1
    while len(np.unique(labels)) < k:
        vals, counts = np.unique(labels, return_counts=True)
        largest = vals[np.argmax(counts)]
        members = np.flatnonzero(labels == largest)
        labels[members[len(members) // 2:]] = next_label
        next_label += 1
    return labels


@dataclass
class CellMixResult:
    """
    Outcome of one reference-free factorization at a fixed K.

    Attributes
    ----------
    mu : pd.DataFrame
        Probes × K methylation signatures.
    omega : pd.DataFrame
        Samples × K mixing proportions (rows sum to at most one).
    k : int
        Number of latent cell types.
    incremental_change : list of dict
        Summary (min/q1/median/mean/q3/max) of ``|Mu - Mu_prev|`` per iteration.
    finalized_on : str
        ``"Y"`` or ``"y_final"``, recording which matrix produced ``mu``.
    """

    mu: pd.DataFrame
    omega: pd.DataFrame
    k: int
    incremental_change: List[Dict[str, float]] = field(default_factory=list)
    finalized_on: str = "Y"

    def reconstruct(self) -> pd.DataFrame:
        """Fitted intensities ``Mu · Omegaᵀ`` (probes × samples)."""
        return pd.DataFrame(
            self.mu.to_numpy() @ self.omega.to_numpy().T,
            index=self.mu.index,
            columns=self.omega.index,
        )

    def summary(self) -> Dict[str, object]:
        row_sums = self.omega.sum(axis=1)
        return {
            "k": self.k,
            "n_probes": int(self.mu.shape[0]),
            "n_samples": int(self.omega.shape[0]),
            "omega_mean": self.omega.mean(axis=0).round(4).to_dict(),
            "omega_row_sum_min": float(row_sums.min()),
            "omega_row_sum_max": float(row_sums.max()),
            "iterations": len(self.incremental_change),
            "last_max_change": (
                self.incremental_change[-1]["max"] if self.incremental_change else None
            ),
            "finalized_on": self.finalized_on,
        }

    def __repr__(self) -> str:
        return (
            f"CellMixResult(k={self.k}, probes={self.mu.shape[0]}, "
            f"samples={self.omega.shape[0]}, finalized_on={self.finalized_on!r})"
        )


def _change_summary(diff: np.ndarray) -> Dict[str, float]:
    d = pd.Series(np.abs(diff).ravel()).dropna()
    if d.empty:
        return {key: np.nan for key in ("min", "q1", "median", "mean", "q3", "max")}
    return {
        "min": float(d.min()),
        "q1": float(d.quantile(0.25)),
        "median": float(d.median()),
        "mean": float(d.mean()),
        "q3": float(d.quantile(0.75)),
        "max": float(d.max()),
    }


def _row_labels(obj: ArrayLike, n: int) -> List[str]:
    if isinstance(obj, pd.DataFrame):
        return [str(x) for x in obj.index]
    return [f"probe{i}" for i in range(n)]


def _col_labels(obj: ArrayLike, n: int) -> List[str]:
    if isinstance(obj, pd.DataFrame):
        return [str(x) for x in obj.columns]
    return [f"sample{i}" for i in range(n)]


def _check_final(Y: np.ndarray, y_final: np.ndarray) -> None:
    if y_final.ndim != 2 or y_final.shape[1] != Y.shape[1]:
        raise ValueError(
            "y_final must have the same samples (columns) as Y; "
            f"got {y_final.shape[1] if y_final.ndim == 2 else 'invalid'} vs {Y.shape[1]}"
        )


def ref_free_cell_mix(
    Y: ArrayLike,
    mu0: Optional[ArrayLike] = None,
    k: Optional[int] = None,
    iters: int = 10,
    y_final: Optional[ArrayLike] = None,
    verbose: bool = False,
    method: str = "ward",
    linkage_matrix: Optional[np.ndarray] = None,
    large_ok: bool = False,
    n_jobs: int = 1,
) -> CellMixResult:
    """
    Reference-free deconvolution at a fixed number of cell types.

    Alternates ``Omega = project(Y, Mu)`` (rows non-negative, summing to at
    most one) and ``Mu = project(Yᵀ, Omega)`` (entries in [0, 1]) for
    ``iters`` iterations, starting from ``mu0`` or from a clustering-based
    initialization.

    Parameters
    ----------
    Y : np.ndarray or pd.DataFrame
        Probes × samples intensity matrix in [0, 1]; NaN allowed.
    mu0 : array-like, optional
        Initial probes × K signatures. Required unless ``k`` is given.
    k : int, optional
        Number of cell types, used when ``mu0`` is ``None``.
    iters : int, default 10
        Number of alternating updates.
    y_final : array-like, optional
        Second intensity matrix with the same samples as ``Y`` (probes may
        differ). When given, the returned Mu is the projection of
        ``y_finalᵀ`` on the final Omega; Omega itself is unchanged.
    verbose : bool, default False
        Log the per-iteration change summary at INFO level.
    method, linkage_matrix, large_ok
        Passed to :func:`initialize_mu`.
    n_jobs : int, default 1
        joblib workers for the Mu projection.

    Returns
    -------
    CellMixResult

    Raises
    ------
    ValueError
        If neither ``mu0`` nor ``k`` is provided, or shapes disagree.

    Notes
    -----
    For ``k == 1`` without ``mu0`` no iteration is done: Mu is the row mean
    of ``y_final`` (or ``Y``) and every sample has proportion one.
    Rows of ``mu0`` that contain NaN are excluded from the Omega step.
    Samples without any observed value get a NaN Omega row and are excluded
    from the Mu step.
    """
    Yarr = _as_array(Y)
    probe_labels = _row_labels(Y, Yarr.shape[0])
    sample_labels = _col_labels(Y, Yarr.shape[1])
    Yf = None
    final_labels = probe_labels
    if y_final is not None:
        Yf = _as_array(y_final)
        _check_final(Yarr, Yf)
        final_labels = _row_labels(y_final, Yf.shape[0])

    if mu0 is None:
        if k is None:
            raise ValueError("Either mu0 or k must be provided")
        if k == 1:
            src = Yf if Yf is not None else Yarr
            with np.errstate(invalid="ignore"):
                mu = np.nanmean(src, axis=1)[:, None]
            omega = np.ones((Yarr.shape[1], 1))
            return CellMixResult(
                mu=pd.DataFrame(mu, index=final_labels, columns=[1]),
                omega=pd.DataFrame(omega, index=sample_labels, columns=[1]),
                k=1,
                finalized_on="y_final" if Yf is not None else "Y",
            )
        mu0 = initialize_mu(
            Yarr, k, linkage_matrix=linkage_matrix, method=method, large_ok=large_ok
        )
    mu0 = _as_array(mu0)
    if mu0.shape[0] != Yarr.shape[0]:
        raise ValueError("mu0 must have one row per probe of Y")
    K = mu0.shape[1]

    changes: List[Dict[str, float]] = []
    omega = None
    mu = mu0
    for it in range(iters):
        flag = ~np.isnan(mu0).any(axis=1)
        omega = project_mix(Yarr[flag], mu0[flag])
        mu = _project_signatures(Yarr, omega, n_jobs=n_jobs)
        changes.append(_change_summary(mu - mu0))
        if verbose:
            logger.info(f"Iteration {it + 1}/{iters} |dMu|: {changes[-1]}")
        mu0 = mu

    finalized_on = "Y"
    if Yf is not None:
        mu = _project_signatures(Yf, omega, n_jobs=n_jobs)
        finalized_on = "y_final"

    cell_types = list(range(1, K + 1))
    return CellMixResult(
        mu=pd.DataFrame(mu, index=final_labels, columns=cell_types),
        omega=pd.DataFrame(omega, index=sample_labels, columns=cell_types),
        k=K,
        incremental_change=changes,
        finalized_on=finalized_on,
    )


def ref_free_cell_mix_array(
    Y: ArrayLike,
    k_list: Iterable[int] = range(1, 6),
    iters: int = 10,
    y_final: Optional[ArrayLike] = None,
    method: str = "ward",
    large_ok: bool = False,
    n_jobs: int = 1,
) -> Dict[int, CellMixResult]:
    """
    Fit :func:`ref_free_cell_mix` once per candidate K.

    The sample clustering used for initialization is computed once and cut
    at each K.

    Returns
    -------
    dict[int, CellMixResult]
        Results keyed by K, in the order of ``k_list``.
    """
    k_list = [int(k) for k in k_list]
    if not k_list:
        raise ValueError("k_list must contain at least one K")
    if min(k_list) < 1:
        raise ValueError("All K must be positive")
    Yarr = _as_array(Y)
    tree = None
    if max(k_list) > 1:
        tree = _sample_linkage(Yarr, method, large_ok)

    results: Dict[int, CellMixResult] = {}
    for k in logger.track(k_list, "Factorization sweep"):
        results[k] = ref_free_cell_mix(
            Y,
            k=k,
            iters=iters,
            y_final=y_final,
            linkage_matrix=tree,
            n_jobs=n_jobs,
        )
    logger.info(f"Factorization sweep finished for K={k_list}")
    return results
