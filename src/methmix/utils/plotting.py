#!/usr/bin/env python
# coding: utf-8


"""
Plotting utilities for reference-free deconvolution results.

This module provides the figures used while choosing K and inspecting a \
factorization. Functions operate on pandas DataFrames or \
:class:`CellMixResult` objects and return standardised matplotlib figures.

Features
--------
- Standardised figure creation
- Scree plot with the suggested elbow and chosen K marked
- Bootstrap deviance boxplots per candidate K with trimmed means overlaid
- Stacked bar chart of per-sample mixing proportions (Omega)
- Heatmap of the most variable methylation signatures (Mu)
- Heatmap of component correlations between two runs
"""


from pathlib import Path
from typing import Optional, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import stats

from methmix.core.comparison import _column_correlation
from methmix.utils.logger import logger

sns.set(style="whitegrid")


def _new_fig(figsize: tuple = (10, 6), dpi: int = 300) -> plt.Figure:
    """
    Create a new matplotlib figure with standardised methmix plotting settings.

    Parameters
    ----------
    figsize : tuple[int, int], default (10, 6)
        Width and height of the figure in inches.
    dpi : int, default 300
        Resolution of the figure in dots per inch.

    Returns
    -------
    plt.Figure
        A fresh matplotlib Figure instance with the requested dimensions and DPI.
    """
    return plt.figure(figsize=figsize, dpi=dpi)


def _finish(fig: plt.Figure, dpi: int, save_path: Optional[Union[str, Path]]) -> plt.Figure:
    plt.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return fig


def plot_scree(
    eigenvalues: Union[pd.DataFrame, pd.Series, np.ndarray],
    elbow: Optional[int] = None,
    k: Optional[int] = None,
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Scree plot of PCA eigenvalues.

    Parameters
    ----------
    eigenvalues : pd.DataFrame, pd.Series or np.ndarray
        Output of :func:`methmix.core.model_selection.pca_eigenvalues` or a
        descending eigenvalue sequence.
    elbow : int, optional
        1-based component marked as the elbow.
    k : int, optional
        Chosen number of cell types, shown in the title.
    dpi : int
        Figure resolution
    save_path : str or Path, optional
        Path to save figure

    Returns
    -------
    plt.Figure
        Scree plot figure
    """
    if isinstance(eigenvalues, pd.DataFrame):
        ev = eigenvalues["eigenvalue"].to_numpy(dtype=float)
    else:
        ev = np.asarray(eigenvalues, dtype=float)
    if ev.size == 0:
        raise ValueError("No eigenvalues to plot")
    comps = np.arange(1, len(ev) + 1)

    fig = _new_fig((8, 5), dpi)
    ax = fig.add_subplot(111)
    ax.plot(comps, ev, marker="o", color="steelblue", lw=1.5)
    if elbow is not None and 1 <= elbow <= len(ev):
        ax.axvline(elbow, color="red", linestyle="--", alpha=0.7, label=f"Elbow ({elbow})")
        ax.scatter([elbow], [ev[elbow - 1]], color="red", s=60, zorder=3)
        ax.legend()
    ax.set_xticks(comps)
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Eigenvalue")
    title = "Scree Plot"
    if k is not None:
        title += f" (K = {k})"
    ax.set_title(title)
    return _finish(fig, dpi, save_path)


def plot_deviance_boots(
    devs: pd.DataFrame,
    trim: float = 0.25,
    chosen_k: Optional[int] = None,
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Boxplot of bootstrap deviances per candidate K.

    The trimmed mean of each K (the quantity minimized when choosing K) is
    drawn on top of the boxes.

    Parameters
    ----------
    devs : pd.DataFrame
        Replicates × K deviance table from
        :func:`methmix.core.model_selection.array_deviance_boots`.
    trim : float, default 0.25
        Proportion trimmed from each end for the overlaid means.
    chosen_k : int, optional
        K to highlight.
    dpi : int
        Figure resolution
    save_path : str or Path, optional
        Path to save figure
    """
    if devs.empty:
        raise ValueError("Deviance table is empty")
    long = devs.melt(var_name="K", value_name="deviance")
    long["K"] = long["K"].astype(str)
    order = [str(k) for k in devs.columns]
    means = [
        stats.trim_mean(devs[k].dropna().to_numpy(), proportiontocut=trim)
        for k in devs.columns
    ]

    fig = _new_fig((8, 5), dpi)
    ax = fig.add_subplot(111)
    sns.boxplot(data=long, x="K", y="deviance", order=order, color="lightgrey", ax=ax)
    ax.plot(range(len(order)), means, color="darkred", marker="D", lw=1.2,
            label=f"Trimmed mean ({trim:.0%})")
    if chosen_k is not None and str(chosen_k) in order:
        pos = order.index(str(chosen_k))
        ax.axvline(pos, color="red", linestyle="--", alpha=0.6)
    ax.set_xlabel("K")
    ax.set_ylabel("Bootstrap deviance")
    ax.set_title("Deviance Bootstrap")
    ax.legend()
    return _finish(fig, dpi, save_path)


def plot_omega(
    omega: pd.DataFrame,
    sort_by: Optional[Union[int, str]] = None,
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Stacked bar chart of per-sample mixing proportions.

    Bars shorter than one show the part of each sample not explained by the
    K latent cell types.

    Parameters
    ----------
    omega : pd.DataFrame
        Samples × K proportions.
    sort_by : int or str, optional
        Component whose proportion orders the samples (descending).
    dpi : int
        Figure resolution
    save_path : str or Path, optional
        Path to save figure
    """
    if omega.empty:
        raise ValueError("Omega is empty")
    om = omega
    if sort_by is not None:
        if sort_by not in om.columns:
            raise KeyError(f"Component {sort_by!r} not in Omega")
        om = om.sort_values(sort_by, ascending=False)

    width = min(max(6, 0.15 * len(om)), 20)
    fig = _new_fig((width, 5), dpi)
    ax = fig.add_subplot(111)
    palette = sns.color_palette("tab10", n_colors=om.shape[1])
    bottom = np.zeros(len(om))
    x = np.arange(len(om))
    for color, comp in zip(palette, om.columns):
        vals = om[comp].to_numpy(dtype=float)
        ax.bar(x, vals, bottom=bottom, color=color, width=0.9, label=str(comp))
        bottom += vals
    ax.set_xlim(-0.5, len(om) - 0.5)
    ax.set_ylim(0, 1.05)
    if len(om) <= 60:
        ax.set_xticks(x)
        ax.set_xticklabels(om.index, rotation=90, fontsize=6)
    else:
        ax.set_xticks([])
    ax.set_xlabel("Sample")
    ax.set_ylabel("Proportion")
    ax.set_title(f"Estimated Mixing Proportions (K = {om.shape[1]})")
    ax.legend(title="Component", bbox_to_anchor=(1.02, 1), loc="upper left")
    return _finish(fig, dpi, save_path)


def plot_mu_heatmap(
    mu: pd.DataFrame,
    top_n: int = 500,
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Heatmap of the ``top_n`` probes whose signatures differ most across
    components.

    Parameters
    ----------
    mu : pd.DataFrame
        Probes × K signatures.
    top_n : int, default 500
        Number of probes shown (ranked by across-component variance).
    dpi : int
        Figure resolution
    save_path : str or Path, optional
        Path to save figure
    """
    mu = mu.dropna(how="any")
    if mu.empty:
        raise ValueError("Mu has no complete rows to plot")
    if top_n < 1:
        raise ValueError("top_n must be positive")
    spread = mu.var(axis=1, ddof=0) if mu.shape[1] > 1 else mu.iloc[:, 0]
    sub = mu.loc[spread.sort_values(ascending=False).index[:top_n]]

    fig = _new_fig((6, 8), dpi)
    ax = fig.add_subplot(111)
    sns.heatmap(
        sub,
        cmap="RdBu_r",
        vmin=0,
        vmax=1,
        yticklabels=len(sub) <= 50,
        cbar_kws={"label": "Methylation"},
        ax=ax,
    )
    ax.set_xlabel("Component")
    ax.set_ylabel("CpG")
    ax.set_title(f"Top {len(sub)} Cell-type Signatures")
    return _finish(fig, dpi, save_path)


def plot_component_matches(
    omega_a: pd.DataFrame,
    omega_b: pd.DataFrame,
    labels: tuple = ("a", "b"),
    dpi: int = 300,
    save_path: Optional[Union[str, Path]] = None,
) -> plt.Figure:
    """
    Correlation heatmap between the components of two Omega matrices.

    Parameters
    ----------
    omega_a, omega_b : pd.DataFrame
        Samples × K proportions (aligned on shared samples).
    labels : tuple of str
        Axis labels for the two runs.
    dpi : int
        Figure resolution
    save_path : str or Path, optional
        Path to save figure
    """
    shared = omega_a.index.intersection(omega_b.index)
    if len(shared) == 0:
        raise ValueError("Omega matrices share no samples")
    if len(shared) < len(omega_a.index) or len(shared) < len(omega_b.index):
        logger.warning(f"Plotting component correlation on {len(shared)} shared samples")
    corr = _column_correlation(omega_a.loc[shared], omega_b.loc[shared])

    fig = _new_fig((6, 5), dpi)
    ax = fig.add_subplot(111)
    sns.heatmap(
        corr.astype(float),
        cmap="vlag",
        vmin=-1,
        vmax=1,
        annot=True,
        fmt=".2f",
        cbar_kws={"label": "Pearson r"},
        ax=ax,
    )
    ax.set_xlabel(labels[1])
    ax.set_ylabel(labels[0])
    ax.set_title("Component Correlation")
    return _finish(fig, dpi, save_path)
