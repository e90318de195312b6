#!/usr/bin/env python
# coding: utf-8


"""
Tests for methmix.utils modules.

Covers:
- Logger configuration, run log placement and progress bar handling.
- Plotting utilities and edge cases.
"""


import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from methmix.utils import logger as logger_module
from methmix.utils.logger import ProgressAwareLogger, apply_global_settings, get_logger
from methmix.utils.plotting import (
    _new_fig,
    plot_component_matches,
    plot_deviance_boots,
    plot_mu_heatmap,
    plot_omega,
    plot_scree,
)


class TestLogger:
    """Test central logger"""

    def teardown_method(self):
        log = get_logger()
        log.set_output_dir(None)
        log.setLevel(logging.INFO)

    def test_get_logger_returns_progressawarelogger(self):
        log = get_logger()
        assert isinstance(log, ProgressAwareLogger)
        assert get_logger() is log
        assert log is logger_module.logger

    def test_track_yields_items_and_closes_bar(self):
        log = get_logger()
        seen = []
        for item in log.track([1, 2, 3], "Testing"):
            assert log._pbar is not None
            seen.append(item)
        assert seen == [1, 2, 3]
        assert log._pbar is None

    def test_log_record_closes_active_bar(self):
        log = get_logger()
        for _ in log.track(range(3), "Testing"):
            log.info("Message")  # closes the bar
            assert log._pbar is None

    def test_abandoned_loop_closes_bar(self):
        log = get_logger()
        loop = log.track(range(5), "Testing")
        next(loop)
        loop.close()
        assert log._pbar is None

    def test_no_file_until_first_record(self, tmp_path):
        log = logger_module._configure_logger(output_dir=tmp_path)
        assert log.log_file is not None
        assert not (tmp_path / "log").exists()
        log.info("File output test")

        files = list((tmp_path / "log").glob("methmix_*.log"))
        assert len(files) == 1
        assert "File output test" in files[0].read_text()

    def test_single_console_handler(self):
        log = logger_module._configure_logger()
        logger_module._configure_logger()
        consoles = [h for h in log.handlers if type(h) is logging.StreamHandler]
        assert len(consoles) == 1

    def test_set_output_dir_switches_and_detaches(self, tmp_path):
        log = get_logger()
        first = log.set_output_dir(tmp_path / "a")
        assert log.set_output_dir(tmp_path / "a") is first
        second = log.set_output_dir(tmp_path / "b")
        assert second is not first
        assert first not in log.handlers
        assert Path(log.log_file).parent == tmp_path / "b" / "log"
        log.set_output_dir(None)
        assert log.log_file is None
        assert log.run_log_handler is None

    def test_apply_global_settings(self, tmp_path):
        log = get_logger()
        apply_global_settings(
            {"output_dir": str(tmp_path), "log_level": "WARNING", "log_to_file": True}
        )
        assert log.level == logging.WARNING
        assert Path(log.log_file).parent == tmp_path / "log"
        apply_global_settings({"output_dir": str(tmp_path), "log_to_file": False})
        assert log.level == logging.INFO
        assert log.log_file is None


class TestPlotting:
    """Test plotting functions"""

    def setup_method(self):
        rng = np.random.default_rng(3)
        self.eigen = pd.DataFrame(
            {"eigenvalue": [10.0, 6.0, 0.5, 0.4, 0.3, 0.2, 0.1]},
            index=pd.RangeIndex(1, 8, name="component"),
        )
        self.devs = pd.DataFrame(
            rng.normal(100, 5, size=(6, 3)) - np.array([0, 20, 10]),
            index=pd.RangeIndex(1, 7, name="replicate"),
            columns=pd.Index([1, 2, 3], name="K"),
        )
        raw = rng.dirichlet([2, 1, 1], size=12) * 0.95
        self.omega = pd.DataFrame(
            raw, index=[f"S{i}" for i in range(12)], columns=[1, 2, 3]
        )
        self.mu = pd.DataFrame(
            rng.uniform(0, 1, size=(40, 3)),
            index=[f"cg{i}" for i in range(40)],
            columns=[1, 2, 3],
        )

    def test_new_fig(self):
        fig = _new_fig()
        assert fig is not None

    def test_plot_scree_and_save(self, tmp_path):
        out = tmp_path / "scree.png"
        fig = plot_scree(self.eigen, elbow=3, k=3, dpi=50, save_path=out)
        assert out.exists()
        assert "K = 3" in fig.axes[0].get_title()

    def test_plot_scree_accepts_array(self):
        fig = plot_scree(np.array([3.0, 1.0, 0.5]), dpi=50)
        assert len(fig.axes[0].lines) == 1

    def test_plot_scree_empty(self):
        with pytest.raises(ValueError):
            plot_scree(np.array([]))

    def test_plot_deviance_boots(self, tmp_path):
        out = tmp_path / "dev.png"
        fig = plot_deviance_boots(self.devs, chosen_k=2, dpi=50, save_path=out)
        assert out.exists()
        assert fig.axes[0].get_xlabel() == "K"

    def test_plot_omega_sorted(self):
        fig = plot_omega(self.omega, sort_by=1, dpi=50)
        assert len(fig.axes[0].patches) == 12 * 3

    def test_plot_omega_unknown_component(self):
        with pytest.raises(KeyError):
            plot_omega(self.omega, sort_by=9)

    def test_plot_mu_heatmap_top_n(self):
        fig = plot_mu_heatmap(self.mu, top_n=10, dpi=50)
        assert "Top 10" in fig.axes[0].get_title()

    def test_plot_mu_heatmap_invalid(self):
        with pytest.raises(ValueError):
            plot_mu_heatmap(self.mu, top_n=0)

    def test_plot_component_matches(self):
        shuffled = self.omega[[3, 1, 2]]
        shuffled.columns = [1, 2, 3]
        fig = plot_component_matches(self.omega, shuffled, labels=("run a", "run b"), dpi=50)
        assert fig.axes[0].get_ylabel() == "run a"

    def test_plot_component_matches_no_shared_samples(self):
        other = self.omega.copy()
        other.index = [f"X{i}" for i in range(12)]
        with pytest.raises(ValueError):
            plot_component_matches(self.omega, other)
