#!/usr/bin/env python
# coding: utf-8


"""
Input utilities for loading methylation datasets into methmix.

This module provides a **Python API** for loading methylation intensity \
tables and covariates into the standard :class:`MethylationData` container.

Features
--------
- Robust multi-format reading (CSV, TSV, Excel, pickle, HDF5, Parquet, Feather)
- Automatic coercion of the intensity matrix to numeric values
- HDF5 key selection (prefers `/beta`)
- Sample alignment between intensity matrix and covariate table
- Three high-level entry points:
    - ``load_methylation_data()`` – construct a container from files or frames
    - ``load_covariates()`` – read a covariate table aligned to given samples
    - ``load_example_dataset()`` – the fixed, seeded example dataset
"""


from pathlib import Path
from typing import Optional, Sequence, Union

import pandas as pd

from methmix.core.simulation import simulate_mixture
from methmix.io.data_utils import MethylationData, validate_beta_matrix
from methmix.utils.logger import logger


def _read(
    path: Union[str, Path], index_col: Optional[int], trusted: bool = False
) -> pd.DataFrame:
    """
    Internal reader for common tabular formats.

    Supported formats
    -----------------
    .csv, .tsv/.txt, .xlsx/.xls, .pkl/.pickle, .parquet, .feather, .h5/.hdf5

    For HDF5 files the dataset ``/beta`` is used when present, otherwise the
    only dataset in the file.

    Parameters
    ----------
    path : str or Path
        File to read.
    index_col : int or None
        Column to use as the row index (passed to pandas readers).
    trusted : bool, default False
        Only allow ``.pkl`` / ``.pickle`` files from trusted sources.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If pickle input is untrusted, the format is unsupported, or an HDF5 \
        file holds several datasets and none is named ``beta``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    suf = path.suffix.lower()

    if suf == ".csv":
        return pd.read_csv(path, index_col=index_col)
    elif suf in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t", index_col=index_col)
    elif suf in (".xlsx", ".xls"):
        return pd.read_excel(path, index_col=index_col)
    elif suf in (".pkl", ".pickle"):
        if trusted:
            return pd.read_pickle(path)  # nosec B301
        raise ValueError("Pickle files are not supported for untrusted input")
    elif suf == ".parquet":
        return pd.read_parquet(path)
    elif suf == ".feather":
        df = pd.read_feather(path)
        if index_col is not None:
            if index_col < 0 or index_col >= len(df.columns):
                raise IndexError("index_col out of bounds for feather file")
            df = df.set_index(df.columns[index_col])
        return df
    elif suf in (".h5", ".hdf5"):
        with pd.HDFStore(path, "r") as store:
            keys = list(store.keys())
            if "/beta" in keys:
                return store["/beta"]
            if len(keys) == 1:
                return store[keys[0]]
            raise ValueError(
                f"HDF5 file contains multiple keys: {keys}. Store the intensity "
                "matrix under 'beta' or provide a single-dataset file."
            )
    else:
        raise ValueError(f"Unsupported format: {suf}")


def load_covariates(
    pheno_input: Union[str, Path, pd.DataFrame],
    samples: Sequence[str],
    columns: Optional[Sequence[str]] = None,
    index_col: Optional[int] = 0,
) -> pd.DataFrame:
    """
    Read a per-sample covariate table and align it to ``samples``.

    Parameters
    ----------
    pheno_input : str | Path | pd.DataFrame
        Covariate table indexed by sample identifier.
    samples : sequence of str
        Sample order to align to (usually the intensity matrix columns).
    columns : sequence of str, optional
        Covariates to keep. All columns are kept if ``None``.
    index_col : int, default 0
        Column holding sample identifiers when reading from a file.

    Raises
    ------
    KeyError
        If any sample or requested covariate is missing.
    """
    if isinstance(pheno_input, (str, Path)):
        pheno = _read(Path(pheno_input), index_col=index_col)
    else:
        pheno = pheno_input.copy()
    pheno.index = pheno.index.astype(str)
    samples = [str(s) for s in samples]

    missing = set(samples) - set(pheno.index)
    if missing:
        raise KeyError(
            f"Covariates missing for {len(missing)} sample(s): "
            f"{sorted(list(missing))[:10]}..."
        )
    if columns is not None:
        absent = [c for c in columns if c not in pheno.columns]
        if absent:
            raise KeyError(f"Covariates not found in table: {absent}")
        pheno = pheno[list(columns)]
    return pheno.reindex(samples)


def load_methylation_data(
    beta_input: Union[str, Path, pd.DataFrame],
    pheno_input: Optional[Union[str, Path, pd.DataFrame]] = None,
    ann_input: Optional[Union[str, Path, pd.DataFrame]] = None,
    index_col_probe: Optional[int] = 0,
    index_col_sample: Optional[int] = 0,
    trusted: bool = False,
) -> MethylationData:
    """
    Build a MethylationData object from raw matrix/covariate files.

    - Accepts file paths, already-loaded DataFrames, or a mix of both.
    - Performs numeric coercion, [0, 1] range validation and sample alignment.

    Parameters
    ----------
    beta_input : str | Path | pd.DataFrame
        CpG × sample intensity matrix (beta values).
    pheno_input : str | Path | pd.DataFrame, optional
        Sample covariate table. If ``None``, an empty placeholder indexed by \
        the matrix columns is created.
    ann_input : str | Path | pd.DataFrame, optional
        CpG probe annotation.
    index_col_probe : int, default 0
        Column containing CpG identifiers when reading the matrix.
    index_col_sample : int, default 0
        Column containing sample identifiers when reading the covariates.
    trusted : bool, default False
        Allow pickle input.

    Returns
    -------
    MethylationData
        Validated container ready for probe selection.

    Notes
    -----
    Non-numeric entries in the matrix are coerced to NaN with a warning \
    reporting how many values were affected.
    """
    if isinstance(beta_input, (str, Path)):
        beta = _read(Path(beta_input), index_col=index_col_probe, trusted=trusted)
    else:
        beta = beta_input.copy()

    orig_total_na = beta.isna().sum().sum()
    beta = beta.apply(pd.to_numeric, errors="coerce")
    coerced = beta.isna().sum().sum() - orig_total_na
    if coerced > 0:
        logger.warning(
            f"Coerced {int(coerced)} values to NaN while parsing intensity matrix."
        )
    validate_beta_matrix(beta)
    beta.columns = beta.columns.astype(str)

    if pheno_input is None:
        pheno = pd.DataFrame(index=beta.columns)
    else:
        pheno = load_covariates(
            pheno_input, beta.columns, index_col=index_col_sample
        )

    if ann_input is None:
        ann = None
    elif isinstance(ann_input, (str, Path)):
        ann = _read(Path(ann_input), index_col=index_col_probe)
    elif isinstance(ann_input, pd.DataFrame):
        ann = ann_input.copy()
    else:
        raise TypeError("ann_input must be None, path, or DataFrame")

    data = MethylationData(beta=beta, pheno=pheno, ann=ann)
    logger.info(f"Loaded {data.n_samples} samples, {data.n_probes} CpGs.")
    return data


def load_example_dataset(
    n_probes: int = 2000,
    n_samples: int = 60,
    n_cell_types: int = 3,
    seed: int = 1234,
    **kwargs,
) -> MethylationData:
    """
    Return the fixed example dataset used by the tutorial workflow.

    The data are a seeded simulation (see \
    :func:`methmix.core.simulation.simulate_mixture`); calling this function \
    twice with the same arguments yields identical matrices. The true \
    ``mu``, ``omega`` and confounded probe list are stored under \
    ``meta["truth"]``.
    """
    sim = simulate_mixture(
        n_probes=n_probes,
        n_samples=n_samples,
        n_cell_types=n_cell_types,
        seed=seed,
        **kwargs,
    )
    data = MethylationData(beta=sim.beta, pheno=sim.covariates, ann=None)
    data.meta["source"] = "simulated"
    data.meta["truth"] = {
        "mu": sim.mu,
        "omega": sim.omega,
        "confounded_probes": sim.confounded_probes,
        "marker_probes": sim.marker_probes,
    }
    logger.info(f"Loaded example dataset: {data.n_samples} samples, {data.n_probes} CpGs.")
    return data
