"""
Grid search + k-fold CV cho từng họ mô hình, chọn mô hình tốt nhất và đánh giá
một lần duy nhất trên tập test.

Luồng: chia train/test (stratified) -> gán fold (stratified, dùng chung cho mọi
mô hình) -> mỗi fold fit pipeline feature riêng -> mỗi (mô hình, điểm lưới, fold)
fit một estimator và ghi một MetricRecord -> gộp mean/std_err -> chọn -> refit
trên toàn bộ train -> metric trên test.
"""
from __future__ import annotations
import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import BaseEstimator, clone
from sklearn.exceptions import ConvergenceWarning

from .config import SelectionConfig
from .data_processing import require_columns
from .errors import ConfigurationError, FinalEvaluationError, ModelSelectionError
from .features import FeaturePipeline, FittedFeaturePipeline
from .models import (
    Metric,
    baseline_predict_mean,
    evaluate_regression,
    get_metric,
    iter_folds,
    stratified_fold_ids,
    stratified_train_test_idx,
)
from .registry import ModelSpec, check_grids, default_registry, select_models

logger = logging.getLogger(__name__)

TABLE_COLUMNS = ["model", "grid_id", "params", "n_params", "mean", "std_err", "n_folds", "n_failed"]


@dataclass(frozen=True)
class MetricRecord:
    model: str
    grid_id: int
    params: Dict[str, Any]
    fold: int
    value: float                  # NaN nếu fold lỗi
    error: Optional[str] = None


@dataclass
class _FoldData:
    fold: int
    X_train: Optional[np.ndarray]
    y_train: np.ndarray
    X_val: Optional[np.ndarray]
    y_val: np.ndarray
    error: Optional[str] = None


def _prepare_folds(train: pd.DataFrame, fold_ids: np.ndarray, pipeline: FeaturePipeline,
                   target: str) -> List[_FoldData]:
    """Mỗi fold fit pipeline riêng trên phần train của fold (tránh leak từ fold validation)"""
    y = train[target].to_numpy(dtype=float)
    folds = []
    for fold, tr, va in iter_folds(fold_ids):
        df_tr, df_va = train.iloc[tr], train.iloc[va]
        try:
            fitted = pipeline.fit(df_tr)
            folds.append(_FoldData(fold, fitted.transform(df_tr), y[tr], fitted.transform(df_va), y[va]))
        except ConfigurationError:
            raise
        except Exception as e:
            logger.warning("Fold %d: fit pipeline lỗi (%s), mọi điểm lưới của fold ghi NaN", fold, e)
            folds.append(_FoldData(fold, None, y[tr], None, y[va], error=f"pipeline: {e}"))
    return folds


def _fit_score(estimator: BaseEstimator, X_tr, y_tr, X_va, y_va, metric: Metric,
               convergence_as_failure: bool) -> float:
    with warnings.catch_warnings():
        if convergence_as_failure:
            warnings.simplefilter("error", ConvergenceWarning)
        estimator.fit(X_tr, y_tr)
        pred = np.asarray(estimator.predict(X_va), dtype=float)
    if not np.all(np.isfinite(pred)):
        raise ValueError("dự đoán có giá trị không hữu hạn")
    return metric.fn(y_va, pred)


def _evaluate_unit(name: str, grid_id: int, params: Dict[str, Any], estimator: BaseEstimator,
                   fd: _FoldData, metric: Metric, convergence_as_failure: bool) -> MetricRecord:
    """Một đơn vị công việc: đọc fold + điểm lưới bất biến, trả về đúng một MetricRecord"""
    if fd.error is not None:
        return MetricRecord(name, grid_id, params, fd.fold, float("nan"), fd.error)
    try:
        value = _fit_score(estimator, fd.X_train, fd.y_train, fd.X_val, fd.y_val,
                           metric, convergence_as_failure)
    except Exception as e:
        return MetricRecord(name, grid_id, params, fd.fold, float("nan"), f"{type(e).__name__}: {e}")
    return MetricRecord(name, grid_id, params, fd.fold, value)


def tune(
    train: pd.DataFrame,
    fold_ids: np.ndarray,
    specs: Mapping[str, ModelSpec],
    pipeline: FeaturePipeline,
    *,
    target: str,
    metric: str = "rmse",
    random_state: Optional[int] = None,
    n_jobs: int = 1,
    convergence_as_failure: bool = True,
) -> List[MetricRecord]:
    """
    Chạy toàn bộ lưới cho mọi họ mô hình trên cùng một bộ fold.
    Fold lỗi (không hội tụ, ma trận suy biến, ...) -> value NaN, không dừng cả lưới.
    """
    m = get_metric(metric)
    folds = _prepare_folds(train, fold_ids, pipeline, target)

    jobs = []
    for name, spec in specs.items():
        for grid_id, params in enumerate(spec.grid):
            base = spec.make(params, random_state=random_state)
            for fd in folds:
                jobs.append(delayed(_evaluate_unit)(
                    name, grid_id, dict(params), clone(base), fd, m, convergence_as_failure
                ))
    logger.info("Tuning %d models, %d fits (%d folds)", len(specs), len(jobs), len(folds))
    records = Parallel(n_jobs=n_jobs)(jobs)

    for r in records:
        if r.error is not None:
            logger.warning("%s #%d fold %d lỗi: %s", r.model, r.grid_id, r.fold, r.error)
    return list(records)


# --- Gộp theo điểm lưới ---
def aggregate(records: Sequence[MetricRecord]) -> pd.DataFrame:
    """
    Bảng [model, grid_id, params, n_params, mean, std_err, n_folds, n_failed].
    mean/std_err chỉ tính trên các fold thành công; mọi fold lỗi -> mean NaN (bị loại khi chọn).
    """
    if not records:
        return pd.DataFrame(columns=TABLE_COLUMNS)
    df = pd.DataFrame([r.__dict__ for r in records])
    rows = []
    for (model, grid_id), g in df.groupby(["model", "grid_id"], sort=False):
        v = g["value"].to_numpy(dtype=float)
        ok = v[~np.isnan(v)]
        params = g["params"].iloc[0]
        if ok.size == 0:
            logger.warning("%s #%d %s: mọi fold đều lỗi, loại khỏi lựa chọn", model, grid_id, params)
            mean, se = float("nan"), float("nan")
        else:
            mean = float(ok.mean())
            se = float(ok.std(ddof=1) / np.sqrt(ok.size)) if ok.size > 1 else 0.0
        rows.append({
            "model": model, "grid_id": int(grid_id), "params": params, "n_params": len(params),
            "mean": mean, "std_err": se, "n_folds": int(ok.size), "n_failed": int(v.size - ok.size),
        })
    return pd.DataFrame(rows, columns=TABLE_COLUMNS)


# --- Chọn mô hình ---
def _ordered(table: pd.DataFrame, metric: str) -> pd.DataFrame:
    """
    Bỏ điểm lưới không có metric; sắp theo: metric tốt nhất -> std_err nhỏ -> ít tham số -> grid_id nhỏ.
    Trong một họ mọi điểm có cùng số tham số, nên khi hoà thứ tự là thứ tự liệt kê lưới
    (default_registry đặt điểm đơn giản nhất lên đầu).
    """
    m = get_metric(metric)
    t = table.dropna(subset=["mean"]).copy()
    t["_key"] = -t["mean"] if m.greater_is_better else t["mean"]
    t = t.sort_values(["_key", "std_err", "n_params", "grid_id"], kind="mergesort")
    return t.drop(columns="_key")


def best_per_model(table: pd.DataFrame, metric: str = "rmse") -> pd.DataFrame:
    """Mỗi họ mô hình một dòng tốt nhất, xếp hạng từ tốt tới kém"""
    t = _ordered(table, metric)
    return t.drop_duplicates(subset="model", keep="first").reset_index(drop=True)


def select_best(table: pd.DataFrame, metric: str = "rmse") -> pd.Series:
    """Dòng tốt nhất toàn cục (hàm thuần, không dựa vào vị trí cố định trong bảng)"""
    ranking = best_per_model(table, metric)
    if ranking.empty:
        raise ModelSelectionError("Không còn điểm lưới nào có metric hợp lệ để chọn")
    return ranking.iloc[0]


# --- Đánh giá cuối trên test ---
@dataclass
class FinalResult:
    model: str
    params: Dict[str, Any]
    metric: str
    value: float
    baseline_value: float
    scores: Dict[str, float]
    y_true: np.ndarray = field(repr=False)
    y_pred: np.ndarray = field(repr=False)
    pipeline: Optional[FittedFeaturePipeline] = field(default=None, repr=False)
    estimator: Optional[BaseEstimator] = field(default=None, repr=False)


def final_evaluate(
    spec: ModelSpec,
    params: Mapping[str, Any],
    train: pd.DataFrame,
    test: pd.DataFrame,
    pipeline: FeaturePipeline,
    *,
    target: str,
    metric: str = "rmse",
    random_state: Optional[int] = None,
) -> FinalResult:
    """
    Refit pipeline + mô hình đã chọn trên toàn bộ train, tính metric một lần trên test.
    Lỗi ở đây là lỗi nghiêm trọng: không có mô hình dự phòng.
    """
    m = get_metric(metric)
    y_tr = train[target].to_numpy(dtype=float)
    y_te = test[target].to_numpy(dtype=float)
    try:
        fitted = pipeline.fit(train)
        est = spec.make(params, random_state=random_state)
        est.fit(fitted.transform(train), y_tr)
        pred = np.asarray(est.predict(fitted.transform(test)), dtype=float)
        if not np.all(np.isfinite(pred)):
            raise ValueError("dự đoán có giá trị không hữu hạn")
    except Exception as e:
        raise FinalEvaluationError(spec.name, dict(params), f"{type(e).__name__}: {e}") from e

    value = m.fn(y_te, pred)
    baseline = m.fn(y_te, baseline_predict_mean(y_tr, y_te.size))
    logger.info("Final %s %s: test %s=%.4f (baseline mean=%.4f)", spec.name, dict(params), m.name, value, baseline)
    return FinalResult(spec.name, dict(params), m.name, value, baseline,
                       evaluate_regression(y_te, pred), y_te, pred, fitted, est)


# --- Chạy trọn workflow ---
@dataclass
class SelectionResult:
    config: SelectionConfig
    train: pd.DataFrame = field(repr=False)
    test: pd.DataFrame = field(repr=False)
    fold_ids: np.ndarray = field(repr=False)
    records: List[MetricRecord] = field(repr=False)
    table: pd.DataFrame = field(repr=False)
    ranking: pd.DataFrame
    best: pd.Series
    final: FinalResult


def split_dataset(df: pd.DataFrame, config: SelectionConfig, rng: np.random.Generator):
    """(train, test, fold_ids); fold_ids tính một lần trên train và dùng chung cho mọi mô hình"""
    y = df[config.target].to_numpy(dtype=float)
    tr, te = stratified_train_test_idx(y, prop=config.train_prop, rng=rng, n_bins=config.n_bins, task="regression")
    train = df.iloc[tr].reset_index(drop=True)
    test = df.iloc[te].reset_index(drop=True)
    fold_ids = stratified_fold_ids(
        train[config.target].to_numpy(dtype=float), k=config.n_folds, rng=rng,
        n_bins=config.n_bins, task="regression",
    )
    return train, test, fold_ids


def _check_input(df: pd.DataFrame, config: SelectionConfig) -> None:
    require_columns(df, config.feature_spec.columns + [config.target])
    y = pd.to_numeric(df[config.target], errors="coerce")
    if y.isna().any():
        raise ConfigurationError(f"Cột mục tiêu {config.target!r} có {int(y.isna().sum())} giá trị thiếu/không phải số")
    if (y <= 0).any():
        raise ConfigurationError(f"Cột mục tiêu {config.target!r} phải > 0")
    fs = config.feature_spec
    for col in dict.fromkeys(list(fs.numeric) + list(fs.boolean) + list(fs.impute_with)):
        coerced = pd.to_numeric(df[col], errors="coerce")
        bad = int((coerced.isna() & df[col].notna()).sum())
        if bad:
            raise ConfigurationError(f"Cột số {col!r} có {bad} giá trị không phải số")


def run_model_selection(
    df: pd.DataFrame,
    config: Optional[SelectionConfig] = None,
    registry: Optional[Mapping[str, ModelSpec]] = None,
) -> SelectionResult:
    config = config or SelectionConfig()
    config.validate()
    specs = select_models(registry if registry is not None else default_registry(), config.models)
    check_grids(specs)
    _check_input(df, config)

    rng = np.random.default_rng(config.seed)
    train, test, fold_ids = split_dataset(df, config, rng)
    logger.info("Split: %d train / %d test, %d folds", len(train), len(test), config.n_folds)

    pipeline = FeaturePipeline(config.feature_spec)
    records = tune(
        train, fold_ids, specs, pipeline,
        target=config.target, metric=config.metric, random_state=config.seed,
        n_jobs=config.n_jobs, convergence_as_failure=config.convergence_as_failure,
    )
    table = aggregate(records)
    ranking = best_per_model(table, config.metric)
    best = select_best(table, config.metric)
    for _, row in ranking.iterrows():
        logger.info("  %-14s %s=%.4f (se %.4f) %s", row["model"], config.metric, row["mean"], row["std_err"], row["params"])

    final = final_evaluate(
        specs[best["model"]], best["params"], train, test, pipeline,
        target=config.target, metric=config.metric, random_state=config.seed,
    )
    return SelectionResult(config, train, test, fold_ids, records, table, ranking, best, final)
