"""
Tests for the tuner, the selector and the final evaluator.
"""

import warnings

import numpy as np
import pandas as pd
import pytest
from sklearn.base import BaseEstimator, RegressorMixin
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LinearRegression
from sklearn.neighbors import KNeighborsRegressor

from airbnb_price.config import SelectionConfig
from airbnb_price.errors import ConfigurationError, FinalEvaluationError, ModelSelectionError
from airbnb_price.features import FeaturePipeline
from airbnb_price.models import stratified_fold_ids
from airbnb_price.registry import ModelSpec
from airbnb_price.tuning import (
    MetricRecord,
    aggregate,
    best_per_model,
    final_evaluate,
    run_model_selection,
    select_best,
    tune,
)


class MeanRegressor(BaseEstimator, RegressorMixin):
    """Predicts the training mean; fails or warns on demand."""

    def __init__(self, fail=False, fail_above=None, warn=False):
        self.fail = fail
        self.fail_above = fail_above
        self.warn = warn

    def fit(self, X, y):
        if self.fail:
            raise ValueError("singular fit")
        if self.fail_above is not None and np.max(y) >= self.fail_above:
            raise ValueError("did not converge")
        if self.warn:
            warnings.warn("objective did not converge", ConvergenceWarning)
        self.mean_ = float(np.mean(y))
        return self

    def predict(self, X):
        return np.full(np.asarray(X).shape[0], self.mean_)


def _specs(**grids):
    return {name: ModelSpec(name, lambda rs: MeanRegressor(), grid) for name, grid in grids.items()}


@pytest.fixture
def small_train(linear_data):
    train = linear_data.iloc[:200].reset_index(drop=True)
    fold_ids = stratified_fold_ids(train["price"].to_numpy(), k=5, rng=0)
    return train, fold_ids


def _table(rows):
    return pd.DataFrame(rows, columns=["model", "grid_id", "params", "n_params", "mean", "std_err", "n_folds", "n_failed"])


class TestAggregate:

    def test_mean_and_std_err(self):
        records = [MetricRecord("m", 0, {"a": 1}, f, v) for f, v in enumerate([1.0, 2.0, 3.0, 4.0])]
        t = aggregate(records)
        row = t.iloc[0]
        assert row["mean"] == pytest.approx(2.5)
        assert row["std_err"] == pytest.approx(np.std([1, 2, 3, 4], ddof=1) / 2.0)
        assert row["n_folds"] == 4 and row["n_failed"] == 0 and row["n_params"] == 1

    def test_missing_folds_ignored(self):
        records = [MetricRecord("m", 0, {}, 0, 2.0), MetricRecord("m", 0, {}, 1, float("nan"), "boom")]
        row = aggregate(records).iloc[0]
        assert row["mean"] == 2.0 and row["std_err"] == 0.0
        assert row["n_folds"] == 1 and row["n_failed"] == 1

    def test_all_failed_excluded_with_warning(self, caplog):
        records = [MetricRecord("m", 0, {}, f, float("nan"), "boom") for f in range(3)]
        records.append(MetricRecord("m", 1, {}, 0, 5.0))
        with caplog.at_level("WARNING"):
            t = aggregate(records)
        assert np.isnan(t.loc[t["grid_id"] == 0, "mean"]).all()
        assert "m #0" in caplog.text
        assert select_best(t)["grid_id"] == 1


class TestSelector:

    def test_minimum_mean(self):
        t = _table([
            ("ridge", 0, {"alpha": 1.0}, 1, 12.0, 0.5, 10, 0),
            ("ridge", 1, {"alpha": 0.1}, 1, 10.0, 0.5, 10, 0),
            ("knn", 0, {"n_neighbors": 5}, 1, 11.0, 0.1, 10, 0),
        ])
        best = select_best(t)
        assert (best["model"], best["grid_id"]) == ("ridge", 1)

    def test_tie_broken_by_std_err_then_params_then_grid_id(self):
        t = _table([
            ("a", 0, {"p": 1}, 1, 10.0, 0.9, 10, 0),
            ("a", 1, {"p": 2}, 1, 10.0, 0.3, 10, 0),
            ("b", 0, {"p": 1, "q": 2}, 2, 10.0, 0.3, 10, 0),
            ("a", 2, {"p": 3}, 1, 10.0, 0.3, 10, 0),
        ])
        best = select_best(t)
        assert (best["model"], best["grid_id"]) == ("a", 1)

    def test_greater_is_better_metric(self):
        t = _table([
            ("a", 0, {}, 0, 0.5, 0.1, 10, 0),
            ("b", 0, {}, 0, 0.8, 0.1, 10, 0),
        ])
        assert select_best(t, "rsq")["model"] == "b"
        assert select_best(t, "rmse")["model"] == "a"

    def test_best_per_model_ranked(self):
        t = _table([
            ("a", 0, {}, 0, 3.0, 0.1, 10, 0),
            ("b", 0, {"k": 1}, 1, 1.0, 0.1, 10, 0),
            ("b", 1, {"k": 2}, 1, 2.0, 0.1, 10, 0),
            ("c", 0, {}, 0, float("nan"), float("nan"), 0, 10),
        ])
        ranking = best_per_model(t)
        assert ranking["model"].tolist() == ["b", "a"]
        assert ranking.iloc[0]["grid_id"] == 0

    def test_no_usable_rows(self):
        t = _table([("a", 0, {}, 0, float("nan"), float("nan"), 0, 10)])
        with pytest.raises(ModelSelectionError):
            select_best(t)


class TestTune:

    def test_one_record_per_fold_and_grid_point(self, small_train, linear_spec):
        train, fold_ids = small_train
        specs = _specs(m=[{"fail": False}, {"fail": False}])
        records = tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price")
        assert len(records) == 2 * 5
        assert {(r.grid_id, r.fold) for r in records} == {(g, f) for g in range(2) for f in range(5)}

    def test_failing_grid_point_recorded_as_missing(self, small_train, linear_spec):
        train, fold_ids = small_train
        specs = _specs(m=[{"fail": False}, {"fail": True}])
        records = tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price")
        t = aggregate(records)
        bad = t[t["grid_id"] == 1].iloc[0]
        assert np.isnan(bad["mean"]) and bad["n_failed"] == 5
        assert select_best(t)["grid_id"] == 0

    def test_partial_failure_uses_remaining_folds(self, small_train, linear_spec):
        train, fold_ids = small_train
        specs = _specs(m=[{"fail_above": float(train["price"].max())}])
        t = aggregate(tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price"))
        row = t.iloc[0]
        # only the fold that holds the max price out of training succeeds
        assert row["n_folds"] == 1 and row["n_failed"] == 4
        assert np.isfinite(row["mean"])

    def test_convergence_warning_counts_as_failure(self, small_train, linear_spec):
        train, fold_ids = small_train
        specs = _specs(m=[{"warn": True}])
        strict = aggregate(tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price"))
        assert strict.iloc[0]["n_failed"] == 5
        lenient = aggregate(tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price",
                                 convergence_as_failure=False))
        assert lenient.iloc[0]["n_failed"] == 0

    def test_parallel_matches_sequential(self, small_train, linear_spec):
        train, fold_ids = small_train
        specs = {"knn": ModelSpec("knn", lambda rs: KNeighborsRegressor(), [{"n_neighbors": 3}, {"n_neighbors": 7}])}
        seq = aggregate(tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price", n_jobs=1))
        par = aggregate(tune(train, fold_ids, specs, FeaturePipeline(linear_spec), target="price", n_jobs=2))
        np.testing.assert_allclose(seq["mean"], par["mean"])


class TestFinalEvaluate:

    def test_refit_and_score_on_test(self, linear_data, linear_spec):
        train, test = linear_data.iloc[:800], linear_data.iloc[800:]
        spec = ModelSpec("linear", lambda rs: LinearRegression())
        res = final_evaluate(spec, {}, train, test, FeaturePipeline(linear_spec), target="price")
        assert res.model == "linear" and res.metric == "rmse"
        assert res.value < 7.0
        assert res.value < res.baseline_value
        assert res.y_pred.shape == (200,)
        assert set(res.scores) == {"rmse", "mae", "rsq"}
        assert res.scores["rmse"] == pytest.approx(res.value)

    def test_failure_is_fatal(self, linear_data, linear_spec):
        train, test = linear_data.iloc[:800], linear_data.iloc[800:]
        spec = ModelSpec("m", lambda rs: MeanRegressor(), [{"fail": True}])
        with pytest.raises(FinalEvaluationError) as exc:
            final_evaluate(spec, {"fail": True}, train, test, FeaturePipeline(linear_spec), target="price")
        assert exc.value.details["model"] == "m"


class TestRunModelSelection:

    def _config(self, linear_spec, **kw):
        return SelectionConfig(feature_spec=linear_spec, models=["linear", "knn"], **kw)

    def _registry(self):
        return {
            "linear": ModelSpec("linear", lambda rs: LinearRegression()),
            "knn": ModelSpec("knn", lambda rs: KNeighborsRegressor(),
                             [{"n_neighbors": k} for k in (5, 10, 20)]),
        }

    def test_linear_beats_knn_on_same_folds(self, linear_data, linear_spec):
        result = run_model_selection(linear_data, self._config(linear_spec), self._registry())
        ranking = result.ranking.set_index("model")
        assert ranking.loc["linear", "mean"] < ranking.loc["knn", "mean"]
        assert result.best["model"] == "linear"
        assert result.final.model == "linear"
        assert result.final.value < 7.0

    def test_partition_sizes(self, linear_data, linear_spec):
        result = run_model_selection(linear_data, self._config(linear_spec), self._registry())
        assert len(result.train) + len(result.test) == len(linear_data)
        assert abs(len(result.train) / len(linear_data) - 0.8) < 0.01
        assert len(result.fold_ids) == len(result.train)
        assert set(np.unique(result.fold_ids)) == set(range(10))

    def test_deterministic_for_same_seed(self, linear_data, linear_spec):
        a = run_model_selection(linear_data, self._config(linear_spec, seed=3), self._registry())
        b = run_model_selection(linear_data, self._config(linear_spec, seed=3), self._registry())
        pd.testing.assert_frame_equal(a.train, b.train)
        np.testing.assert_array_equal(a.fold_ids, b.fold_ids)
        assert (a.best["model"], a.best["grid_id"]) == (b.best["model"], b.best["grid_id"])
        pd.testing.assert_frame_equal(a.table.drop(columns="params"), b.table.drop(columns="params"))

    def test_missing_target_column_fails_fast(self, linear_data, linear_spec):
        with pytest.raises(ConfigurationError, match="price"):
            run_model_selection(linear_data.drop(columns=["price"]), self._config(linear_spec), self._registry())

    def test_non_positive_target_fails_fast(self, linear_data, linear_spec):
        df = linear_data.copy()
        df.loc[0, "price"] = -1.0
        with pytest.raises(ConfigurationError):
            run_model_selection(df, self._config(linear_spec), self._registry())

    def test_unknown_model_name(self, linear_data, linear_spec):
        config = SelectionConfig(feature_spec=linear_spec, models=["linear", "svm"])
        with pytest.raises(ConfigurationError, match="svm"):
            run_model_selection(linear_data, config, self._registry())

    def test_non_numeric_feature_fails_before_fitting(self, linear_data, linear_spec, caplog):
        df = linear_data.copy()
        df["x"] = df["x"].astype(object)
        df.loc[5, "x"] = "not a number"
        config = SelectionConfig(feature_spec=linear_spec, models=["linear"])
        with caplog.at_level("WARNING"), pytest.raises(ConfigurationError, match="'x'"):
            run_model_selection(df, config, self._registry())
        assert "Fold" not in caplog.text

    def test_missing_feature_values_are_not_malformed(self, linear_data, linear_spec):
        df = linear_data.copy()
        df.loc[5, "z0"] = np.nan
        config = SelectionConfig(feature_spec=linear_spec, models=["linear"])
        result = run_model_selection(df, config, self._registry())
        assert result.final.model == "linear"

    def test_unknown_grid_key_fails_before_split(self, linear_data, linear_spec):
        registry = self._registry()
        registry["knn"] = ModelSpec("knn", lambda rs: KNeighborsRegressor(), [{"n_neighbours": 3}])
        with pytest.raises(ConfigurationError, match="n_neighbours"):
            run_model_selection(linear_data, self._config(linear_spec), registry)


class TestDefaultRegistryOnListings:

    def test_all_families_run(self, listings):
        config = SelectionConfig(n_folds=3, models=["linear", "ridge", "polynomial", "boosted_trees"])
        result = run_model_selection(listings, config)
        assert set(result.ranking["model"]) <= {"linear", "ridge", "polynomial", "boosted_trees"}
        assert "ridge" in set(result.ranking["model"])
        assert np.isfinite(result.final.value)
