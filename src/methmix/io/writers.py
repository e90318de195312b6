#!/usr/bin/env python
# coding: utf-8


"""
Output utilities for saving methylation data and deconvolution results.

This module provides a unified Python API for exporting:

- MethylationData objects in multiple formats
- Estimated mixing proportions (Omega) and signatures (Mu)
- Self-contained HTML analysis reports with embedded plots

All export functions include overwrite protection, automatic directory creation,
and informative logging.

Features
--------
- Smart format detection and suffix handling
- Optional compression (blosc:zstd or gzip) for HDF5
- Excel export through xlsxwriter with openpyxl as the alternative engine
- One-call HTML report generation from summary dict + matplotlib figures
"""


import json
from pathlib import Path
from typing import Dict, Optional, Union

import matplotlib.pyplot as plt
import pandas as pd

from methmix.config.config_manager import get_config
from methmix.core.factorization import CellMixResult
from methmix.io.data_utils import MethylationData
from methmix.utils.logger import logger

_SUFFIXES = {
    "csv": ".csv",
    "tsv": ".tsv",
    "xlsx": ".xlsx",
    "pickle": ".pkl",
    "pkl": ".pkl",
    "hdf5": ".h5",
    "h5": ".h5",
}


def _check_overwrite(path: Path, overwrite: bool) -> None:
    """
    Raise FileExistsError if the path exists and overwriting is disabled.

    Used internally by all export functions.
    """
    if not overwrite and path.exists():
        raise FileExistsError(f"{path} exists and overwrite=False")


def _excel_writer(path: Path) -> pd.ExcelWriter:
    try:
        return pd.ExcelWriter(path, engine="xlsxwriter")
    except ImportError:
        logger.warning("xlsxwriter not available; using openpyxl")
        return pd.ExcelWriter(path, engine="openpyxl")


def export_deconvolution(
    result: CellMixResult,
    output_dir: Optional[Union[str, Path]] = None,
    prefix: str = "reffree",
    format: str = "csv",
    overwrite: bool = True,
) -> Dict[str, Path]:
    """
    Write the Omega and Mu tables of a factorization.

    For ``csv`` / ``tsv`` two files are written, ``<prefix>_K<k>_omega`` and
    ``<prefix>_K<k>_mu``. For ``xlsx`` a single workbook with sheets
    ``omega`` and ``mu`` is written.

    Parameters
    ----------
    result : CellMixResult
        Factorization to export.
    output_dir : str or Path, optional
        Destination directory (created if missing). Defaults to
        ``<global_settings.output_dir>/tables``.
    prefix : str, default "reffree"
        File name prefix.
    format : {"csv", "tsv", "xlsx"}, default "csv"
        Output format.
    overwrite : bool, default True
        Raise FileExistsError if a target exists and this is False.

    Returns
    -------
    dict
        ``{"omega": path, "mu": path}`` (both the same workbook for xlsx).

    Raises
    ------
    ValueError
        For unsupported ``format``.
    FileExistsError
        When ``overwrite=False`` and a target file already exists.
    """
    fmt = format.lower()
    if fmt not in ("csv", "tsv", "xlsx"):
        raise ValueError(f"Unsupported format: {format!r}")

    if output_dir is None:
        output_dir = Path(get_config().global_settings["output_dir"]) / "tables"
    outdir = Path(output_dir)
    outdir.mkdir(parents=True, exist_ok=True)
    stem = f"{prefix}_K{result.k}"
    omega = result.omega.rename_axis("sample")
    mu = result.mu.rename_axis("probe")

    if fmt == "xlsx":
        path = outdir / f"{stem}.xlsx"
        _check_overwrite(path, overwrite)
        with _excel_writer(path) as writer:
            omega.to_excel(writer, sheet_name="omega")
            mu.to_excel(writer, sheet_name="mu")
        paths = {"omega": path, "mu": path}
    else:
        sep = "," if fmt == "csv" else "\t"
        paths = {
            "omega": outdir / f"{stem}_omega.{fmt}",
            "mu": outdir / f"{stem}_mu.{fmt}",
        }
        for p in paths.values():
            _check_overwrite(p, overwrite)
        omega.to_csv(paths["omega"], sep=sep)
        mu.to_csv(paths["mu"], sep=sep)

    logger.info(f"Deconvolution results (K={result.k}) exported to {outdir}")
    return paths


def save_methylation_data(
    data: MethylationData,
    path: Union[str, Path],
    format: str = "hdf5",
    compression: Optional[str] = "blosc:zstd",
    complib_level: int = 9,
    overwrite: bool = True,
) -> Path:
    """
    Persist a MethylationData object to disk in one of several convenient formats.

    Supported formats
    -----------------
    csv / tsv      → three separate files (beta, pheno, ann)
    xlsx           → single workbook with sheets "beta", "pheno", "ann"
    pickle / pkl   → direct pickle of the MethylationData instance
    hdf5 / h5      → pandas HDFStore with compressed tables

    Parameters
    ----------
    data : MethylationData
        The container to save.
    path : str or Path
        Output path; suffix is automatically corrected to match ``format``.
    format : {"csv", "tsv", "xlsx", "pickle", "pkl", "hdf5", "h5"}, default "hdf5"
        Desired export format.
    compression : str or None, default "blosc:zstd"
        Compression library for HDF5 (only used when format is hdf5).
    complib_level : int, default 9
        Compression level (1–9) for HDF5.
    overwrite : bool, default True
        Allow overwriting existing files.

    Returns
    -------
    Path
        The (suffix-corrected) main output path.

    Raises
    ------
    ValueError
        If an unsupported format is requested.
    FileExistsError
        When ``overwrite=False`` and the target exists.
    """
    fmt = format.lower()
    if fmt not in _SUFFIXES:
        raise ValueError(f"Unsupported format: {format!r}. Choose from {set(_SUFFIXES)}")

    path = Path(path).with_suffix(_SUFFIXES[fmt])
    path.parent.mkdir(parents=True, exist_ok=True)
    _check_overwrite(path, overwrite)
    ann = data.ann if data.ann is not None else pd.DataFrame(index=data.beta.index)

    if fmt in ("csv", "tsv"):
        sep = "," if fmt == "csv" else "\t"
        data.beta.to_csv(path, sep=sep)
        data.pheno.to_csv(path.with_name(f"{path.stem}_pheno.{fmt}"), sep=sep)
        ann.to_csv(path.with_name(f"{path.stem}_ann.{fmt}"), sep=sep)

    elif fmt == "xlsx":
        with _excel_writer(path) as writer:
            data.beta.to_excel(writer, sheet_name="beta")
            data.pheno.to_excel(writer, sheet_name="pheno")
            ann.to_excel(writer, sheet_name="ann")

    elif fmt in ("pickle", "pkl"):
        pd.to_pickle(data, path)

    else:
        comp_kwargs = {}
        if compression:
            comp_kwargs = {"complevel": complib_level, "complib": compression}
        with pd.HDFStore(path, mode="w") as store:
            store.put("beta", data.beta, format="table", **comp_kwargs)
            if len(data.pheno.columns):
                store.put("pheno", data.pheno, format="table", **comp_kwargs)
            if len(ann.columns):
                store.put("ann", ann, format="table", **comp_kwargs)

    logger.info(f"Saved MethylationData in {fmt} format to {path}")
    return path


def generate_analysis_report(
    summary: dict,
    plots: Optional[Dict[str, plt.Figure]] = None,
    outpath: Optional[Union[str, Path]] = None,
    title: str = "Reference-free Deconvolution Report",
) -> Path:
    """
    Generate a self-contained, minimal HTML report embedding a JSON \
    summary and PNG images of supplied figures.

    Parameters
    ----------
    summary : dict
        Arbitrary summary statistics or results (JSON-serialisable; other
        objects are rendered with ``str``).
    plots : dict[str, plt.Figure], optional
        Mapping from plot name to Matplotlib figure objects.
    outpath : str or Path, optional
        Output HTML file location. Defaults to
        ``<global_settings.output_dir>/analysis_report.html``.
    title : str
        Top-level heading in the report.

    Returns
    -------
    Path
        Path to the generated HTML file.
    """
    if outpath is None:
        outpath = Path(get_config().global_settings["output_dir"]) / "analysis_report.html"
    outpath = Path(outpath)
    outdir = outpath.parent
    outdir.mkdir(parents=True, exist_ok=True)
    images = {}
    for name, fig in (plots or {}).items():
        if fig is None:
            continue
        p = outdir / f"{name}.png"
        fig.savefig(p, dpi=150, bbox_inches="tight")
        plt.close(fig)
        images[name] = p.name

    html_lines = [
        f"<html><head><meta charset='utf-8'><title>{title}</title></head><body>",
        f"<h1>{title}</h1>",
        "<h2>Summary</h2>",
        "<pre>",
        json.dumps(summary, indent=2, default=str),
        "</pre>",
    ]
    for name, img in images.items():
        html_lines.append(f"<h3>{name}</h3>")
        html_lines.append(f"<img src='{img}' style='max-width:100%;height:auto'/>")
    html_lines.append("</body></html>")
    outpath.write_text("\n".join(html_lines), encoding="utf-8")
    logger.info(f"Report written to {outpath}")
    return outpath
