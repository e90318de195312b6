#!/usr/bin/env python
# coding: utf-8


"""
End-to-end reference-free deconvolution workflow.

:func:`run_reffree_analysis` strings the individual steps together:

1. probe selection (variance ranking or confounder filtering),
2. choice of K (factorization sweep + deviance bootstrap, or PCA scree),
3. factorization at the chosen K,
4. optional finalization of Mu on a second intensity matrix.

Unspecified settings are read from the global :class:`AnalysisConfig`.
"""


from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Union

import pandas as pd

from methmix.config.config_manager import AnalysisConfig, get_config
from methmix.core.comparison import summarize_result
from methmix.core.factorization import CellMixResult, ref_free_cell_mix, ref_free_cell_mix_array
from methmix.core.model_selection import (
    array_deviance_boots,
    choose_k_deviance,
    choose_k_scree,
    pca_eigenvalues,
    summarize_deviance,
)
from methmix.core.probe_selection import select_probes
from methmix.io.data_utils import MethylationData
from methmix.utils.logger import logger


@dataclass
class DeconvolutionRun:
    """
    Everything produced by one pass of the workflow.

    Attributes
    ----------
    strategy : str
        Probe selection strategy used.
    data : MethylationData
        The probe-subset dataset the factorization was fitted on.
    selection : dict
        Diagnostics from :func:`methmix.core.probe_selection.select_probes`.
    k : int
        Chosen number of cell types.
    k_method : str
        ``"deviance"``, ``"scree"`` or ``"fixed"``.
    result : CellMixResult
        Factorization at ``k``.
    candidates : dict[int, CellMixResult]
        Sweep results (deviance method only).
    deviance : pd.DataFrame, optional
        Replicates × K bootstrap deviances.
    eigenvalues : pd.DataFrame, optional
        PCA eigenvalues (scree method only).
    scree : dict, optional
        Elbow position and retained component count.
    final_result : CellMixResult, optional
        Same Omega as ``result`` with Mu finalized on ``y_final``.
    """

    strategy: str
    data: MethylationData
    selection: Dict[str, Any]
    k: int
    k_method: str
    result: CellMixResult
    candidates: Dict[int, CellMixResult] = field(default_factory=dict)
    deviance: Optional[pd.DataFrame] = None
    eigenvalues: Optional[pd.DataFrame] = None
    scree: Optional[Dict[str, int]] = None
    final_result: Optional[CellMixResult] = None

    def summary(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "strategy": self.strategy,
            "k_method": self.k_method,
            "k": self.k,
            "n_probes": self.data.n_probes,
            "n_samples": self.data.n_samples,
            "n_confounded": self.selection.get("n_confounded"),
            "result": self.result.summary(),
            "components": summarize_result(self.result).round(4).to_dict(orient="index"),
        }
        if self.deviance is not None:
            out["trimmed_mean_deviance"] = summarize_deviance(self.deviance).round(2).to_dict()
        if self.scree is not None:
            out["scree"] = dict(self.scree)
        if self.final_result is not None:
            out["final_result"] = self.final_result.summary()
        return out


def _final_matrix(
    y_final: Union[MethylationData, pd.DataFrame], samples: pd.Index
) -> pd.DataFrame:
    beta = y_final.beta if isinstance(y_final, MethylationData) else y_final
    if not isinstance(beta, pd.DataFrame):
        raise TypeError("y_final must be a MethylationData or a DataFrame")
    cols = beta.columns.astype(str)
    missing = set(samples) - set(cols)
    if missing:
        raise KeyError(f"y_final is missing {len(missing)} sample(s): {sorted(missing)[:5]}")
    beta = beta.copy()
    beta.columns = cols
    return beta.loc[:, list(samples)]


def run_reffree_analysis(
    data: MethylationData,
    strategy: Optional[str] = None,
    k: Optional[int] = None,
    k_method: Optional[str] = None,
    config: Optional[AnalysisConfig] = None,
    y_final: Optional[Union[MethylationData, pd.DataFrame]] = None,
    k_list: Optional[Iterable[int]] = None,
    n_top: Optional[int] = None,
    replicates: Optional[int] = None,
    manual_k: Optional[int] = None,
    seed: Optional[int] = None,
) -> DeconvolutionRun:
    """
    Run probe selection, K selection and the final factorization.

    Parameters
    ----------
    data : MethylationData
        Full dataset (probes × samples intensities plus covariates).
    strategy : {"variance", "confounder"}, optional
        Probe selection strategy. Defaults to ``probe_selection.strategy``.
    k : int, optional
        Fixed number of cell types; skips K selection when given.
    k_method : {"deviance", "scree"}, optional
        K selection heuristic. Defaults to ``global_settings.k_method``.
    config : AnalysisConfig, optional
        Settings source; the global configuration when omitted.
    y_final : MethylationData or pd.DataFrame, optional
        Intensities with the same samples (any probes) used to finalize Mu.
    k_list : iterable of int, optional
        Candidate K for the deviance sweep. Defaults to ``k_min..k_max``.
    n_top : int, optional
        Probes kept after ranking. Defaults to ``probe_selection.n_top_probes``.
    replicates : int, optional
        Bootstrap replicates. Defaults to ``bootstrap.replicates``.
    manual_k : int, optional
        Visual-inspection override for the scree heuristic.
    seed : int, optional
        Bootstrap seed. Defaults to ``global_settings.random_seed``.

    Returns
    -------
    DeconvolutionRun

    Raises
    ------
    ValueError
        For an unknown ``k_method`` or invalid settings.
    """
    cfg = config or get_config()
    ps = cfg.get_section("probe_selection")
    fac = cfg.get_section("factorization")
    boot = cfg.get_section("bootstrap")
    scree_cfg = cfg.get_section("scree")
    gs = cfg.get_section("global_settings")

    strategy = strategy or ps["strategy"]
    k_method = k_method or gs["k_method"]
    if k is None and k_method not in ("deviance", "scree"):
        raise ValueError(f"Unknown k_method: {k_method}")
    seed = gs["random_seed"] if seed is None else seed

    covariates = None
    if strategy == "confounder":
        covariates = [c for c in ps["covariates"] if c in data.pheno.columns]
        if len(covariates) < len(ps["covariates"]):
            logger.warning(
                f"Configured covariates absent from pheno are ignored: "
                f"{sorted(set(ps['covariates']) - set(covariates))}"
            )

    logger.info(f"Selecting probes with strategy '{strategy}'")
    subset, selection = select_probes(
        data,
        strategy=strategy,
        n_top=ps["n_top_probes"] if n_top is None else n_top,
        covariates=covariates,
        alpha=ps["alpha"],
        adjust_method=ps["adjust_method"],
        min_observed=ps["min_observed"],
    )
    Y = subset.beta
    fit_kwargs = dict(
        iters=fac["iters"],
        method=fac["linkage_method"],
        large_ok=fac["large_ok"],
        n_jobs=fac["n_jobs"],
    )

    candidates: Dict[int, CellMixResult] = {}
    devs = None
    eigen = None
    scree_info = None

    if k is not None:
        if k < 1:
            raise ValueError("k must be a positive integer")
        k_method = "fixed"
        result = ref_free_cell_mix(Y, k=k, **fit_kwargs)
    elif k_method == "deviance":
        ks = list(k_list) if k_list is not None else cfg.k_range()
        candidates = ref_free_cell_mix_array(Y, k_list=ks, **fit_kwargs)
        devs = array_deviance_boots(
            candidates,
            Y,
            R=boot["replicates"] if replicates is None else replicates,
            epsilon=boot["epsilon"],
            bootstrap_iterations=boot["bootstrap_iterations"],
            evaluate_on=boot["evaluate_on"],
            seed=seed,
        )
        k = choose_k_deviance(devs, trim=boot["trim"])
        result = candidates[k]
    else:
        eigen = pca_eigenvalues(Y, n_components=scree_cfg["max_components"])
        k, scree_info = choose_k_scree(
            eigen, manual_k=manual_k, k_offset=scree_cfg["k_offset"]
        )
        result = ref_free_cell_mix(Y, k=k, **fit_kwargs)

    final_result = None
    if y_final is not None:
        Yf = _final_matrix(y_final, Y.columns)
        final_result = ref_free_cell_mix(Y, k=k, y_final=Yf, **fit_kwargs)
        logger.info(
            f"Mu finalized on {Yf.shape[0]} probes (fit used {Y.shape[0]} probes)"
        )

    logger.info(f"Deconvolution finished: strategy={strategy}, K={k} ({k_method})")
    return DeconvolutionRun(
        strategy=strategy,
        data=subset,
        selection=selection,
        k=k,
        k_method=k_method,
        result=result,
        candidates=candidates,
        deviance=devs,
        eigenvalues=eigen,
        scree=scree_info,
        final_result=final_result,
    )
