#!/usr/bin/env python
# coding: utf-8


"""
Choosing the number of latent cell types K.

Two alternative heuristics are provided:

1. **Deviance bootstrap.** For every fitted K, Mu is re-estimated on a \
bootstrap resample of the samples (columns drawn with replacement) and the \
Gaussian deviance of the reconstruction is computed. Replicates are \
aggregated with a trimmed mean and the K with smallest average deviance wins.
2. **Scree plot (Cattell's rule).** PCA eigenvalues of the samples in probe \
space are inspected for an elbow; components above the elbow are retained. \
The elbow is suggested automatically (maximum distance to the chord) and \
can be overridden manually after visual inspection.

Features
--------
- Paired resampling: one resample per replicate is shared by every K
- Evaluation on the full matrix or on out-of-bag samples only
- Per-probe maximum-likelihood noise scale floored by ``epsilon``
- Progress reporting through the package logger
"""


from typing import Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.decomposition import PCA

from methmix.core.factorization import (
    ArrayLike,
    CellMixResult,
    _as_array,
    _project_signatures,
    project_mix,
)
from methmix.utils.logger import logger


def _gaussian_deviance(resid: np.ndarray, epsilon: float) -> float:
    """-2 log-likelihood with a per-probe MLE standard deviation."""
    with np.errstate(invalid="ignore"):
        sigma = np.sqrt(np.nanmean(resid**2, axis=1))
    sigma = np.maximum(np.nan_to_num(sigma, nan=epsilon), epsilon)
    ll = stats.norm.logpdf(resid, loc=0.0, scale=sigma[:, None])
    return float(-2.0 * np.nansum(ll))


def deviance_boot(
    result: CellMixResult,
    Y: ArrayLike,
    boots: np.ndarray,
    epsilon: float = 1e-9,
    bootstrap_iterations: int = 5,
    evaluate_on: str = "full",
) -> float:
    """
    Deviance of one fitted K under one bootstrap resample.

    Starting from ``result.mu``, Omega and Mu are alternately re-estimated
    ``bootstrap_iterations`` times on ``Y[:, boots]``. The resulting Mu is
    then used to project the evaluation samples and the Gaussian deviance of
    the residuals is returned.

    Parameters
    ----------
    result : CellMixResult
        Fit for one K (its Mu must have the same probes as ``Y``).
    Y : np.ndarray or pd.DataFrame
        Probes × samples intensity matrix the fit was made on.
    boots : np.ndarray
        Column indices of the resample (drawn with replacement).
    epsilon : float, default 1e-9
        Floor on the per-probe standard deviation.
    bootstrap_iterations : int, default 5
        Alternating updates on the resample (0 re-uses Mu as-is).
    evaluate_on : {"full", "oob"}, default "full"
        Evaluate on every sample, or only on samples absent from ``boots``
        (falls back to every sample when none are out of bag).

    Returns
    -------
    float
        Deviance (lower is better).
    """
    Y = _as_array(Y)
    boots = np.asarray(boots, dtype=int)
    if evaluate_on not in ("full", "oob"):
        raise ValueError("evaluate_on must be 'full' or 'oob'")

    mu = result.mu.to_numpy(dtype=float)
    if mu.shape[0] != Y.shape[0]:
        raise ValueError(
            "Result Mu and Y have different probe counts; deviance must be "
            "computed on the matrix the sweep was fitted on"
        )

    flag = ~np.isnan(mu).any(axis=1)
    Yb = Y[:, boots]
    for _ in range(bootstrap_iterations):
        omega_b = project_mix(Yb[flag], mu[flag])
        mu = _project_signatures(Yb, omega_b)
        flag = ~np.isnan(mu).any(axis=1)

    eval_cols = np.arange(Y.shape[1])
    if evaluate_on == "oob":
        oob = np.setdiff1d(eval_cols, boots)
        if len(oob):
            eval_cols = oob
    Ye = Y[:, eval_cols]

    omega = project_mix(Ye[flag], mu[flag])
    resid = Ye[flag] - mu[flag] @ omega.T
    return _gaussian_deviance(resid, epsilon)


def array_deviance_boots(
    results: Mapping[int, CellMixResult],
    Y: ArrayLike,
    R: int = 5,
    epsilon: float = 1e-9,
    bootstrap_iterations: int = 5,
    evaluate_on: str = "full",
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Bootstrap deviances for every K of a factorization sweep.

    Parameters
    ----------
    results : mapping int -> CellMixResult
        Output of :func:`methmix.core.factorization.ref_free_cell_mix_array`.
    Y : np.ndarray or pd.DataFrame
        The intensity matrix the sweep was fitted on.
    R : int, default 5
        Number of bootstrap replicates.
    epsilon, bootstrap_iterations, evaluate_on
        Passed to :func:`deviance_boot`.
    seed : int, optional
        Seed for the resampling generator.

    Returns
    -------
    pd.DataFrame
        R × len(results) table of deviances; columns are K, rows replicates.
    """
    if R < 1:
        raise ValueError("R must be a positive integer")
    if not results:
        raise ValueError("results must contain at least one fitted K")
    Yarr = _as_array(Y)
    n = Yarr.shape[1]
    rng = np.random.default_rng(seed)
    ks = list(results.keys())
    devs = np.full((R, len(ks)), np.nan)

    for r in logger.track(range(R), "Bootstrapping deviance"):
        boots = rng.integers(0, n, size=n)
        for j, k in enumerate(ks):
            devs[r, j] = deviance_boot(
                results[k],
                Yarr,
                boots,
                epsilon=epsilon,
                bootstrap_iterations=bootstrap_iterations,
                evaluate_on=evaluate_on,
            )
    logger.info(f"Deviance bootstrap finished: R={R}, K={ks}")

    return pd.DataFrame(
        devs, index=pd.RangeIndex(1, R + 1, name="replicate"), columns=pd.Index(ks, name="K")
    )


def summarize_deviance(devs: pd.DataFrame, trim: float = 0.25) -> pd.Series:
    """
    Trimmed mean deviance per K.

    ``trim`` is the proportion cut from *each* end of the replicate
    distribution (0.25 keeps the inter-quartile replicates).
    """
    if not 0.0 <= trim < 0.5:
        raise ValueError("trim must lie in [0, 0.5)")
    out = {
        k: stats.trim_mean(devs[k].dropna().to_numpy(), proportiontocut=trim)
        for k in devs.columns
    }
    return pd.Series(out, name="trimmed_mean_deviance").rename_axis("K")


def choose_k_deviance(devs: pd.DataFrame, trim: float = 0.25) -> int:
    """K minimizing the trimmed mean bootstrap deviance."""
    avg = summarize_deviance(devs, trim=trim)
    if avg.isna().all():
        raise ValueError("All deviance summaries are NaN")
    k = int(avg.idxmin())
    logger.info(f"Deviance bootstrap selects K={k} (trimmed means: {avg.round(1).to_dict()})")
    return k


def pca_eigenvalues(
    Y: ArrayLike, n_components: Optional[int] = None
) -> pd.DataFrame:
    """
    PCA of the samples in probe space.

    Probes with missing values are median-imputed per probe. The eigenvalues
    are those of the probe covariance structure restricted to its non-null
    part (at most ``n_samples - 1`` of them).

    Parameters
    ----------
    Y : np.ndarray or pd.DataFrame
        Probes × samples intensity matrix.
    n_components : int, optional
        Number of components; capped at ``min(n_samples, n_probes)``.

    Returns
    -------
    pd.DataFrame
        Indexed by component (1-based) with columns ``eigenvalue`` and
        ``explained_variance_ratio``.
    """
    Yarr = _as_array(Y)
    if Yarr.shape[1] < 2:
        raise ValueError("PCA needs at least two samples")
    filled = np.where(np.isnan(Yarr), np.nanmedian(Yarr, axis=1, keepdims=True), Yarr)
    filled = filled[~np.isnan(filled).any(axis=1)]

    max_comp = min(filled.shape[1], filled.shape[0])
    n = max_comp if n_components is None else min(int(n_components), max_comp)
    if n < 1:
        raise ValueError("n_components must be positive")
    pca = PCA(n_components=n)
    pca.fit(filled.T)
    return pd.DataFrame(
        {
            "eigenvalue": pca.explained_variance_,
            "explained_variance_ratio": pca.explained_variance_ratio_,
        },
        index=pd.RangeIndex(1, n + 1, name="component"),
    )


def scree_elbow(eigenvalues) -> int:
    """
    Position (1-based) of the scree elbow.

    Both axes are scaled to [0, 1] and the elbow is the point farthest below
    the chord joining the first and last eigenvalues. Components strictly
    before the elbow are the ones Cattell's rule retains.
    """
    ev = np.asarray(
        eigenvalues["eigenvalue"] if isinstance(eigenvalues, pd.DataFrame) else eigenvalues,
        dtype=float,
    )
    if ev.ndim != 1 or len(ev) < 3:
        raise ValueError("At least three eigenvalues are needed to locate an elbow")
    x = np.linspace(0.0, 1.0, len(ev))
    span = ev[0] - ev[-1]
    if span <= 0:
        return 1
    y = (ev - ev[-1]) / span
    # chord runs from (0, 1) to (1, 0): distance is proportional to 1 - x - y
    dist = 1.0 - x - y
    return int(np.argmax(dist)) + 1


def choose_k_scree(
    eigenvalues,
    manual_k: Optional[int] = None,
    k_offset: int = 1,
) -> Tuple[int, Dict[str, int]]:
    """
    K from the scree heuristic.

    Parameters
    ----------
    eigenvalues : pd.DataFrame or array-like
        Output of :func:`pca_eigenvalues` or a descending eigenvalue sequence.
    manual_k : int, optional
        K chosen by visual inspection; returned as-is when given.
    k_offset : int, default 1
        Added to the number of retained components. Proportions that sum to
        one span ``K - 1`` dimensions after centering, hence the default.

    Returns
    -------
    (int, dict)
        Chosen K and a dict with ``elbow`` and ``n_retained``.
    """
    elbow = scree_elbow(eigenvalues)
    n_retained = elbow - 1
    info = {"elbow": elbow, "n_retained": n_retained}
    if manual_k is not None:
        if manual_k < 1:
            raise ValueError("manual_k must be a positive integer")
        logger.info(f"Scree heuristic: manual K={manual_k} (suggested elbow at {elbow})")
        return int(manual_k), info
    k = max(1, n_retained + k_offset)
    logger.info(f"Scree heuristic: elbow at component {elbow}, K={k}")
    return k, info
