#!/usr/bin/env python
# coding: utf-8


"""
Summaries and comparisons of deconvolution results.

Latent cell types from reference-free factorization carry no names and \
their column order is arbitrary, so two runs (e.g. variance-selected versus \
confounder-filtered probes) or a run and a known truth can only be compared \
after matching components. Matching maximizes total Pearson correlation of \
Omega columns with the Hungarian algorithm.
"""


from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy.optimize import linear_sum_assignment

from methmix.core.factorization import CellMixResult
from methmix.utils.logger import logger


def omega_row_sums(omega: pd.DataFrame) -> pd.Series:
    """Per-sample total proportion (at most one by construction)."""
    return omega.sum(axis=1).rename("row_sum")


def summarize_result(result: CellMixResult) -> pd.DataFrame:
    """
    Per-component summary table.

    Columns: mean, sd, min and max proportion across samples, and the mean
    signature value of each component.
    """
    om = result.omega
    return pd.DataFrame(
        {
            "mean_proportion": om.mean(axis=0),
            "sd_proportion": om.std(axis=0, ddof=1),
            "min_proportion": om.min(axis=0),
            "max_proportion": om.max(axis=0),
            "mean_signature": result.mu.mean(axis=0),
        }
    ).rename_axis("component")


def _column_correlation(a: pd.DataFrame, b: pd.DataFrame) -> pd.DataFrame:
    A = a.to_numpy(dtype=float)
    B = b.to_numpy(dtype=float)
    A = A - A.mean(axis=0)
    B = B - B.mean(axis=0)
    na = np.linalg.norm(A, axis=0)
    nb = np.linalg.norm(B, axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        corr = (A.T @ B) / np.outer(na, nb)
    return pd.DataFrame(corr, index=a.columns, columns=b.columns)


def match_components(omega_a: pd.DataFrame, omega_b: pd.DataFrame) -> pd.DataFrame:
    """
    Pair components of two Omega matrices by correlation.

    Samples are aligned on the shared index. Components without a partner
    (different K) are left out.

    Returns
    -------
    pd.DataFrame
        Columns ``component_a``, ``component_b``, ``correlation``,
        ``mean_abs_diff``, sorted by ``component_a``.

    Raises
    ------
    ValueError
        If the two matrices share no samples.
    """
    shared = omega_a.index.intersection(omega_b.index)
    if len(shared) == 0:
        raise ValueError("Omega matrices share no samples")
    a = omega_a.loc[shared]
    b = omega_b.loc[shared]
    corr = _column_correlation(a, b)
    cost = -np.nan_to_num(corr.to_numpy(), nan=-1.0)
    rows, cols = linear_sum_assignment(cost)

    records = []
    for i, j in zip(rows, cols):
        ca, cb = a.columns[i], b.columns[j]
        records.append(
            {
                "component_a": ca,
                "component_b": cb,
                "correlation": float(corr.iloc[i, j]),
                "mean_abs_diff": float(np.mean(np.abs(a[ca] - b[cb]))),
            }
        )
    return pd.DataFrame(records).sort_values("component_a").reset_index(drop=True)


def compare_results(
    result_a: CellMixResult,
    result_b: CellMixResult,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, object]:
    """
    Compare two deconvolution runs.

    Parameters
    ----------
    result_a, result_b : CellMixResult
        Runs to compare (K may differ).
    labels : dict, optional
        Display names, e.g. ``{"a": "variance", "b": "confounder"}``.

    Returns
    -------
    dict
        ``matches`` (see :func:`match_components`), ``mean_correlation``,
        ``k`` per run, ``shared_probes`` between the two Mu matrices and,
        whenever the runs share at least one probe, ``mu_mean_abs_diff``:
        the mean absolute Mu difference over the shared probes, averaged
        across the matched component pairs (K may differ).
    """
    labels = labels or {"a": "a", "b": "b"}
    matches = match_components(result_a.omega, result_b.omega)
    shared_probes = result_a.mu.index.intersection(result_b.mu.index)

    out: Dict[str, object] = {
        "labels": labels,
        "k": {labels["a"]: result_a.k, labels["b"]: result_b.k},
        "matches": matches,
        "mean_correlation": float(matches["correlation"].mean()),
        "shared_probes": int(len(shared_probes)),
    }
    if len(shared_probes):
        diffs = [
            float(
                np.nanmean(
                    np.abs(
                        result_a.mu.loc[shared_probes, row.component_a]
                        - result_b.mu.loc[shared_probes, row.component_b]
                    )
                )
            )
            for row in matches.itertuples()
        ]
        out["mu_mean_abs_diff"] = float(np.mean(diffs))

    logger.info(
        f"Compared {labels['a']} (K={result_a.k}) vs {labels['b']} (K={result_b.k}): "
        f"mean matched Omega correlation={out['mean_correlation']:.3f}, "
        f"shared probes={out['shared_probes']}"
    )
    return out


def compare_to_truth(result: CellMixResult, true_omega: pd.DataFrame) -> pd.DataFrame:
    """Match estimated components to known cell types (simulated data)."""
    matches = match_components(result.omega, true_omega)
    return matches.rename(
        columns={"component_a": "component", "component_b": "cell_type"}
    )
