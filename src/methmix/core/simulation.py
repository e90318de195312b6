#!/usr/bin/env python
# coding: utf-8


"""
Deterministic synthetic methylation mixtures.

Bulk methylation profiles are generated as convex mixtures of a small number \
of cell-type signatures, which is exactly the model reference-free \
deconvolution inverts. The generator is used as the package's fixed example \
dataset and throughout the test suite.

Features
--------
- Bimodal background methylation shared by all cell types
- A block of marker probes whose methylation differs in one cell type
- Dirichlet-distributed mixing proportions per sample
- Age and sex covariates with an injected association on a subset of probes, \
so that confounder-based probe filtering has something to remove
- Gaussian measurement noise, clipped back into [0, 1]
"""


from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from methmix.utils.logger import logger


@dataclass
class SimulatedMixture:
    """Simulated dataset together with the ground truth that produced it."""

    beta: pd.DataFrame
    covariates: pd.DataFrame
    mu: pd.DataFrame
    omega: pd.DataFrame
    confounded_probes: List[str] = field(default_factory=list)
    marker_probes: List[str] = field(default_factory=list)


def simulate_mixture(
    n_probes: int = 2000,
    n_samples: int = 60,
    n_cell_types: int = 3,
    n_confounded: int = 100,
    marker_fraction: float = 0.25,
    noise_sd: float = 0.03,
    dirichlet_alpha: Optional[np.ndarray] = None,
    age_effect: float = 0.004,
    sex_effect: float = 0.08,
    seed: int = 1234,
) -> SimulatedMixture:
    """
    Simulate a probe × sample beta matrix from known cell-type mixtures.

    Parameters
    ----------
    n_probes : int, default 2000
        Number of CpG probes.
    n_samples : int, default 60
        Number of bulk samples.
    n_cell_types : int, default 3
        True number of cell types K.
    n_confounded : int, default 100
        Number of probes associated with age and sex.
    marker_fraction : float, default 0.25
        Fraction of probes that are cell-type specific.
    noise_sd : float, default 0.03
        Standard deviation of additive Gaussian noise.
    dirichlet_alpha : array-like, optional
        Concentration of the Dirichlet used for proportions. Defaults to \
        decreasing abundances ``[K, K-1, ..., 1] * 1.5``.
    age_effect : float, default 0.004
        Beta change per year of age (centred at 50) for confounded probes.
    sex_effect : float, default 0.08
        Beta shift for male samples on confounded probes.
    seed : int, default 1234
        Seed for ``numpy.random.default_rng``.

    Returns
    -------
    SimulatedMixture
        ``beta`` (probes × samples), ``covariates`` (samples × [age, sex]), true
        ``mu`` (probes × K) and ``omega`` (samples × K), plus the identifiers of
        confounded and marker probes.

    Raises
    ------
    ValueError
        If sizes are inconsistent.
    """
    if n_probes < 1 or n_samples < 2 or n_cell_types < 1:
        raise ValueError("n_probes >= 1, n_samples >= 2 and n_cell_types >= 1 required")
    if not 0 <= n_confounded <= n_probes:
        raise ValueError("n_confounded must be between 0 and n_probes")
    if not 0.0 <= marker_fraction <= 1.0:
        raise ValueError("marker_fraction must lie in [0, 1]")

    rng = np.random.default_rng(seed)
    K = n_cell_types

    probes = [f"cg{i:08d}" for i in range(n_probes)]
    samples = [f"S{j:03d}" for j in range(n_samples)]
    cell_types = [f"CT{k + 1}" for k in range(K)]

    base = rng.beta(0.6, 0.6, size=n_probes)
    mu = np.repeat(base[:, None], K, axis=1)

    n_marker = int(round(marker_fraction * n_probes)) if K > 1 else 0
    marker_idx = rng.choice(n_probes, size=n_marker, replace=False)
    marker_type = rng.integers(0, K, size=n_marker)
    # markers flip methylation state in their own cell type
    mu[marker_idx, marker_type] = np.clip(
        1.0 - base[marker_idx] + rng.normal(0, 0.05, n_marker), 0.0, 1.0
    )

    if dirichlet_alpha is None:
        dirichlet_alpha = 1.5 * np.arange(K, 0, -1, dtype=float)
    omega = rng.dirichlet(np.asarray(dirichlet_alpha, dtype=float), size=n_samples)

    age = rng.uniform(20, 80, size=n_samples)
    sex = rng.choice(np.array(["F", "M"]), size=n_samples)
    covariates = pd.DataFrame({"age": age.round(1), "sex": sex}, index=samples)

    Y = mu @ omega.T + rng.normal(0, noise_sd, size=(n_probes, n_samples))

    conf_idx = rng.choice(n_probes, size=n_confounded, replace=False)
    if n_confounded:
        shift = age_effect * (age - 50.0) + sex_effect * (sex == "M")
        Y[conf_idx, :] += shift[None, :]

    Y = np.clip(Y, 0.0, 1.0)

    logger.info(
        f"Simulated mixture: {n_probes} probes, {n_samples} samples, K={K}, "
        f"{n_marker} marker probes, {n_confounded} confounded probes"
    )

    return SimulatedMixture(
        beta=pd.DataFrame(Y, index=probes, columns=samples),
        covariates=covariates,
        mu=pd.DataFrame(mu, index=probes, columns=cell_types),
        omega=pd.DataFrame(omega, index=samples, columns=cell_types),
        confounded_probes=[probes[i] for i in sorted(conf_idx)],
        marker_probes=[probes[i] for i in sorted(marker_idx)],
    )
