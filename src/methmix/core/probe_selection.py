#!/usr/bin/env python
# coding: utf-8


"""
Probe subsetting prior to reference-free deconvolution.

Factorizing every CpG on an array is slow and dominated by uninformative \
probes, so the workflow first restricts the intensity matrix to a smaller \
informative subset. Two strategies are provided:

Features
--------
- Variance ranking: keep the N probes with largest sample variance
- Confounder filtering: regress each probe on a covariate table (age, sex, \
...) and discard probes with a significant association, so that the latent \
components reflect cell composition rather than covariate effects
- Vectorized per-probe OLS with an overall F-test, with a per-probe fallback \
for probes that have missing values
- Multiple-testing correction via statsmodels
- Provenance of every selection step recorded on the data container
"""


from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats import multitest

from methmix.io.data_utils import MethylationData
from methmix.utils.logger import logger


def adjust_pvalues(
    pvals: Union[pd.Series, np.ndarray, List[float]],
    method: str = "fdr_bh",
) -> pd.Series:
    """
    Apply multiple-testing correction to raw p-values using statsmodels.

    NaN values are treated as non-significant (p = 1). The original index is \
    preserved when the input is a pandas Series.

    Parameters
    ----------
    pvals : array-like
        Raw p-values (0 ≤ p ≤ 1).
    method : str, default "fdr_bh"
        Method passed to ``statsmodels.stats.multitest.multipletests``, or \
        ``"none"``.

    Returns
    -------
    pd.Series
        Adjusted p-values in input order.
    """
    if pvals is None:
        raise ValueError("pvals cannot be None")
    idx = pvals.index if isinstance(pvals, pd.Series) else None
    arr = np.array(pvals, dtype=float)
    arr[np.isnan(arr)] = 1.0
    if arr.size == 0:
        return pd.Series(arr, index=idx, dtype=float)
    if method == "none":
        adj = arr
    else:
        try:
            _, adj, _, _ = multitest.multipletests(arr, method=method)
        except Exception as e:
            raise ValueError(f"P-value adjustment failed: {e}")
    return pd.Series(adj, index=idx)


def select_top_variance_probes(beta: pd.DataFrame, n_top: int) -> pd.DataFrame:
    """
    Keep the ``n_top`` probes with the largest sample variance.

    Parameters
    ----------
    beta : pd.DataFrame
        Intensity matrix (probes × samples).
    n_top : int
        Number of probes to keep. Values above the probe count keep every probe.

    Returns
    -------
    pd.DataFrame
        Rows of ``beta`` ordered by descending variance. Ties keep the \
        original probe order; probes whose variance is undefined sort last.

    Raises
    ------
    ValueError
        If ``n_top < 1``.
    """
    if n_top < 1:
        raise ValueError("n_top must be a positive integer")
    var = beta.var(axis=1, ddof=1, skipna=True)
    order = var.sort_values(ascending=False, kind="mergesort", na_position="last")
    if n_top > len(order):
        logger.warning(
            f"Requested {n_top} probes but only {len(order)} available; keeping all."
        )
    keep = order.index[:n_top]
    logger.info(
        f"Variance ranking: kept {len(keep)} of {len(beta)} probes "
        f"(min kept variance={var.loc[keep].min():.3g})"
    )
    return beta.loc[keep]


def build_design(
    covariates: pd.DataFrame,
    categorical: Optional[List[str]] = None,
    add_intercept: bool = True,
    drop_first: bool = True,
) -> pd.DataFrame:
    """
    Build a numeric design matrix from a covariate table.

    Parameters
    ----------
    covariates : pd.DataFrame
        Columns are covariates (age, sex, batch, ...), rows are samples.
    categorical : list of str, optional
        Columns to dummy-encode. Inferred from object/category/bool dtypes \
        when ``None``.
    add_intercept : bool, default True
        Prepend an ``intercept`` column of ones.
    drop_first : bool, default True
        Drop the first dummy level to avoid collinearity.

    Returns
    -------
    pd.DataFrame
        Float design matrix indexed like ``covariates``.
    """
    if not isinstance(covariates, pd.DataFrame):
        raise TypeError("covariates must be a pandas DataFrame")

    df = covariates.copy()

    if categorical is None:
        categorical = [
            col
            for col in df.columns
            if df[col].dtype == "object"
            or df[col].dtype.name.startswith("category")
            or df[col].dtype == "bool"
        ]

    numeric_cols = [col for col in df.columns if col not in categorical]

    design = []
    if add_intercept:
        design.append(pd.DataFrame({"intercept": np.ones(len(df))}, index=df.index))
    if numeric_cols:
        design.append(df[numeric_cols].astype(float))
    for col in categorical:
        design.append(
            pd.get_dummies(
                df[col].astype("category"), prefix=col, drop_first=drop_first
            ).astype(float)
        )

    if not design:
        return pd.DataFrame(index=df.index)
    return pd.concat(design, axis=1)


def _ftest_block(Y: np.ndarray, X: np.ndarray) -> Tuple[np.ndarray, int, int]:
    """
    F statistics of all non-intercept terms for complete rows of ``Y``.

    ``X`` must carry the intercept in column 0. Degrees of freedom follow the
    rank of ``X``, so constant or collinear covariates add no terms.
    """
    n = X.shape[0]
    coef, _, rank, _ = np.linalg.lstsq(X, Y.T, rcond=None)
    df1 = int(rank) - 1
    df2 = n - int(rank)
    if df1 < 1 or df2 < 1:
        return np.full(Y.shape[0], np.nan), df1, df2
    resid = Y.T - X @ coef
    rss1 = np.sum(resid**2, axis=0)
    rss0 = np.sum((Y - Y.mean(axis=1, keepdims=True)) ** 2, axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        F = ((rss0 - rss1) / df1) / (rss1 / df2)
    return F, df1, df2


def probe_covariate_association(
    beta: pd.DataFrame,
    covariates: pd.DataFrame,
    categorical: Optional[List[str]] = None,
    adjust_method: str = "fdr_bh",
    min_observed: int = 3,
) -> pd.DataFrame:
    """
    Test each probe for association with the covariate table.

    Each probe's intensities are regressed on an intercept plus the \
    covariates; the overall F-test compares this fit to the intercept-only \
    model.

    Parameters
    ----------
    beta : pd.DataFrame
        Intensity matrix (probes × samples).
    covariates : pd.DataFrame
        Covariates indexed by sample identifier; aligned to ``beta.columns``.
    categorical : list of str, optional
        Covariates to dummy-encode (inferred when ``None``).
    adjust_method : str, default "fdr_bh"
        Multiple-testing correction applied across probes.
    min_observed : int, default 3
        Probes observed in fewer samples than this, or left without \
        residual degrees of freedom, get NaN statistics.

    Returns
    -------
    pd.DataFrame
        Indexed by probe with columns ``F``, ``df1``, ``df2``, ``pval``, ``padj``.

    Raises
    ------
    KeyError
        If a sample has no covariate row.
    ValueError
        If covariates contain missing values or the design has no covariate term.
    """
    missing = set(beta.columns) - set(covariates.index)
    if missing:
        raise KeyError(f"Covariates missing for samples: {sorted(missing)[:5]}...")
    cov = covariates.reindex(beta.columns)
    if cov.isna().any().any():
        raise ValueError("Covariate table contains missing values")

    design = build_design(cov, categorical=categorical, add_intercept=True)
    if design.shape[1] < 2:
        raise ValueError("Design has no covariate terms to test")
    X = design.to_numpy(dtype=float)
    Y = beta.to_numpy(dtype=float)
    n_probes = Y.shape[0]

    F = np.full(n_probes, np.nan)
    df1 = np.full(n_probes, np.nan)
    df2 = np.full(n_probes, np.nan)

    complete = ~np.isnan(Y).any(axis=1)
    if complete.any():
        Fc, d1, d2 = _ftest_block(Y[complete], X)
        if d1 < design.shape[1] - 1:
            logger.warning(
                f"Design matrix has rank {d1 + 1} for {design.shape[1]} columns; "
                "constant or collinear covariates are not counted as tested terms"
            )
        if X.shape[0] >= min_observed and d1 > 0 and d2 > 0:
            F[complete] = Fc
            df1[complete] = d1
            df2[complete] = d2

    # probes with missing values are fitted on their observed samples only
    for i in np.flatnonzero(~complete):
        obs = ~np.isnan(Y[i])
        Xo = X[obs]
        if obs.sum() < min_observed:
            continue
        Fi, d1, d2 = _ftest_block(Y[i, obs][None, :], Xo)
        if d1 < 1 or d2 < 1:
            continue
        F[i], df1[i], df2[i] = Fi[0], d1, d2

    pval = stats.f.sf(F, df1, df2)
    res = pd.DataFrame(
        {"F": F, "df1": df1, "df2": df2, "pval": pval}, index=beta.index
    )
    res["padj"] = adjust_pvalues(res["pval"], method=adjust_method).to_numpy()

    n_untested = int(res["pval"].isna().sum())
    if n_untested:
        logger.warning(f"{n_untested} probes had too few observations to test")
    return res


def filter_confounded_probes(
    beta: pd.DataFrame,
    covariates: pd.DataFrame,
    alpha: float = 0.05,
    adjust_method: str = "fdr_bh",
    categorical: Optional[List[str]] = None,
    min_observed: int = 3,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Discard probes significantly associated with the covariates.

    Parameters
    ----------
    beta : pd.DataFrame
        Intensity matrix (probes × samples).
    covariates : pd.DataFrame
        Per-sample covariates.
    alpha : float, default 0.05
        Significance threshold on the adjusted p-value.
    adjust_method : str, default "fdr_bh"
        Multiple-testing correction (``"none"`` uses raw p-values).
    categorical : list of str, optional
        Covariates to dummy-encode.
    min_observed : int, default 3
        See :func:`probe_covariate_association`.

    Returns
    -------
    (pd.DataFrame, pd.DataFrame)
        Kept rows of ``beta`` (original order) and the full association table \
        with a boolean ``confounded`` column.
    """
    if not 0.0 < alpha < 1.0:
        raise ValueError("alpha must lie in (0, 1)")
    assoc = probe_covariate_association(
        beta,
        covariates,
        categorical=categorical,
        adjust_method=adjust_method,
        min_observed=min_observed,
    )
    assoc["confounded"] = assoc["padj"] < alpha
    kept = beta.loc[~assoc["confounded"].to_numpy()]
    logger.info(
        f"Confounder filter: removed {int(assoc['confounded'].sum())} of "
        f"{len(beta)} probes (alpha={alpha}, method={adjust_method})"
    )
    return kept, assoc


def select_probes(
    data: MethylationData,
    strategy: str = "variance",
    n_top: Optional[int] = 10_000,
    covariates: Optional[List[str]] = None,
    alpha: float = 0.05,
    adjust_method: str = "fdr_bh",
    min_observed: int = 3,
) -> Tuple[MethylationData, Dict[str, Any]]:
    """
    Subset a dataset's probes with the chosen strategy.

    Parameters
    ----------
    data : MethylationData
        Input dataset.
    strategy : {"variance", "confounder"}, default "variance"
        ``"variance"`` keeps the ``n_top`` most variable probes.
        ``"confounder"`` removes covariate-associated probes first, then keeps \
        the ``n_top`` most variable of the remainder (all of them if \
        ``n_top`` is ``None``).
    n_top : int or None, default 10000
        Number of probes to keep after ranking.
    covariates : list of str, optional
        Columns of ``data.pheno`` to regress on. Defaults to every column.
    alpha, adjust_method, min_observed
        Passed to :func:`filter_confounded_probes`.

    Returns
    -------
    (MethylationData, dict)
        Subset container and a diagnostics dict (``association`` table for \
        the confounder strategy).
    """
    diagnostics: Dict[str, Any] = {"strategy": strategy}
    beta = data.beta

    if strategy == "variance":
        if n_top is None:
            raise ValueError("n_top is required for the variance strategy")
        kept = select_top_variance_probes(beta, n_top)
    elif strategy == "confounder":
        cols = list(covariates) if covariates is not None else list(data.pheno.columns)
        absent = [c for c in cols if c not in data.pheno.columns]
        if absent:
            raise KeyError(f"Covariates not found in pheno: {absent}")
        if not cols:
            raise ValueError("Confounder strategy requires at least one covariate")
        kept, assoc = filter_confounded_probes(
            beta,
            data.pheno[cols],
            alpha=alpha,
            adjust_method=adjust_method,
            min_observed=min_observed,
        )
        diagnostics["association"] = assoc
        diagnostics["n_confounded"] = int(assoc["confounded"].sum())
        if n_top is not None:
            kept = select_top_variance_probes(kept, n_top)
    else:
        raise ValueError(f"Unknown probe selection strategy: {strategy}")

    if kept.empty:
        raise ValueError("Probe selection removed every probe")

    subset = data.subset_probes(kept.index)
    step = {
        "strategy": strategy,
        "n_before": data.n_probes,
        "n_after": subset.n_probes,
        "n_top": n_top,
    }
    if strategy == "confounder":
        step.update({"covariates": cols, "alpha": alpha, "adjust_method": adjust_method})
    subset.meta["probe_selection"].append(step)
    diagnostics["n_selected"] = subset.n_probes
    return subset, diagnostics
