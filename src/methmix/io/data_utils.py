#!/usr/bin/env python
# coding: utf-8


"""
Core data structures and validation utilities for the methmix workflow.

This module defines the central MethylationData container used throughout \
the package and provides helper functions for ensuring data integrity \
(index alignment, type safety and the [0, 1] intensity range).

Key Components
--------------
MethylationData

- The standard container holding the beta-value (intensity) matrix, \
per-sample covariates and optional probe annotation. All workflow \
functions expect this object.

- Validation helpers:

    - `_ensure_index_alignment(beta, pheno, ann)`
        Checks that samples and probes are consistently indexed across components.
    - `_ensure_index_strings(df)`
        Converts DataFrame indices, but not columns, to strings.
    - `validate_beta_matrix(beta)`
        Checks numeric dtype and the [0, 1] range of intensities.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from methmix.utils.logger import logger


def _ensure_index_alignment(
    beta: pd.DataFrame, pheno: pd.DataFrame, ann: Optional[pd.DataFrame]
) -> None:
    """
    Validate that sample and probe indices are consistent across the \
    intensity matrix, covariate table, and annotation.

    Parameters
    ----------
    beta : pd.DataFrame
        Intensity matrix (CpGs × samples).
    pheno : pd.DataFrame
        Sample covariate table (samples must be the index).
    ann : pd.DataFrame or None
        Optional CpG annotation table (CpGs must be the index). If ``None`` or \
        empty, probe-level checks are skipped.

    Raises
    ------
    KeyError
        If samples present in ``beta`` are missing from ``pheno`` or probes \
        present in ``beta`` are missing from ``ann``.
    """
    missing_samples = set(beta.columns) - set(pheno.index)
    if missing_samples:
        raise KeyError(
            f"Samples in beta but not in pheno: {sorted(list(missing_samples))[:5]}..."
        )

    if ann is None:
        return

    if len(ann.index) == 0:
        logger.warning(
            "Annotation provided but empty; skipping probe <-> annotation "
            "alignment check."
        )
        return

    missing_probes = set(beta.index) - set(ann.index)
    if missing_probes:
        raise KeyError(
            f"Probes in beta but not in ann: {sorted(list(missing_probes))[:5]}..."
        )


def _ensure_index_strings(df: pd.DataFrame) -> pd.DataFrame:
    """
    Return a copy of the DataFrame with its index converted to string type.

    Columns are left untouched. ``None`` is passed through.
    """
    if df is None:
        return df
    df = df.copy()
    df.index = df.index.astype(str)
    return df


def validate_beta_matrix(beta: pd.DataFrame, allow_missing: bool = True) -> None:
    """
    Check that an intensity matrix is numeric and bounded by [0, 1].

    Parameters
    ----------
    beta : pd.DataFrame
        Intensity matrix with probes as rows and samples as columns.
    allow_missing : bool, default True
        Whether NaN entries are tolerated.

    Raises
    ------
    TypeError
        If ``beta`` is not a DataFrame.
    ValueError
        If the matrix is empty, non-numeric, contains infinities, has values \
        outside [0, 1], or contains NaN while ``allow_missing=False``.
    """
    if not isinstance(beta, pd.DataFrame):
        raise TypeError("beta must be a pandas DataFrame")
    if beta.empty:
        raise ValueError("beta matrix is empty")

    non_numeric = [c for c in beta.columns if not pd.api.types.is_numeric_dtype(beta[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric sample columns in beta: {non_numeric[:5]}")

    arr = beta.to_numpy(dtype=float)
    if np.isinf(arr).any():
        raise ValueError("beta matrix contains infinite values")

    nan_mask = np.isnan(arr)
    if nan_mask.all():
        raise ValueError("beta matrix contains only missing values")
    if nan_mask.any() and not allow_missing:
        raise ValueError(f"beta matrix contains {int(nan_mask.sum())} missing values")
    empty_samples = beta.columns[nan_mask.all(axis=0)]
    if len(empty_samples):
        logger.warning(
            f"{len(empty_samples)} sample(s) have no observed values and will "
            f"get no proportion estimate: {list(empty_samples[:5])}"
        )

    finite = arr[~nan_mask]
    if finite.min() < 0.0 or finite.max() > 1.0:
        raise ValueError(
            f"beta values must lie in [0, 1]; observed range "
            f"[{finite.min():.4g}, {finite.max():.4g}]"
        )


@dataclass
class MethylationData:
    """
    Central container for aligned methylation data used by the workflow.

    Guarantees that:

    - All components (intensity matrix, sample covariates, probe annotation) \
    share consistent string indices.
    - Sample and probe alignment is validated on construction.
    - A ``meta`` dictionary tracks processing history (probe selection, \
    simulation truth, etc.).

    Parameters
    ----------
    beta : pd.DataFrame
        Intensity matrix with CpG probes as rows and samples as columns,
        values in [0, 1].
    pheno : pd.DataFrame
        Per-sample covariates (age, sex, ...), indexed by sample IDs.
    ann : pd.DataFrame or None
        Optional probe annotation indexed by CpG IDs.
    meta : dict, optional
        Free-form provenance dictionary.
    """

    beta: pd.DataFrame
    pheno: pd.DataFrame
    ann: Optional[pd.DataFrame] = None
    meta: Dict[str, Any] = field(
        default_factory=lambda: {
            "matrix_type": "beta",
            "probe_selection": [],
        }
    )

    def __post_init__(self) -> None:
        self.beta.index = self.beta.index.astype(str)
        self.beta.columns = self.beta.columns.astype(str)
        self.pheno.index = self.pheno.index.astype(str)
        if self.ann is not None:
            self.ann.index = self.ann.index.astype(str)
        _ensure_index_alignment(self.beta, self.pheno, self.ann)

    @property
    def n_probes(self) -> int:
        return self.beta.shape[0]

    @property
    def n_samples(self) -> int:
        return self.beta.shape[1]

    def subset_probes(self, probes) -> "MethylationData":
        """
        Return a new container restricted to ``probes`` (in the given order).

        The covariate table is shared; annotation and meta are copied.
        """
        probes = pd.Index(probes).astype(str)
        missing = probes.difference(self.beta.index)
        if len(missing):
            raise KeyError(f"Unknown probes: {list(missing[:5])}...")
        ann = None
        if self.ann is not None:
            ann = self.ann.reindex(probes) if len(self.ann.index) else self.ann.copy()
        meta = dict(self.meta)
        meta["probe_selection"] = list(self.meta.get("probe_selection", []))
        return MethylationData(
            beta=self.beta.loc[probes].copy(),
            pheno=self.pheno,
            ann=ann,
            meta=meta,
        )
