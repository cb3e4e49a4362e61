# Feature pipeline: impute -> gom nhãn hiếm -> one-hot -> chuẩn hoá
from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.neighbors import KNeighborsClassifier

from .data_processing import require_columns
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

OTHER = "__OTHER__"


# --- Chuẩn hoá Z-score ---
def standardize(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(X - mean)/std theo cột; trả về (X_std, mean, std)"""
    mean = np.nanmean(X, axis=0)
    std = np.nanstd(X, axis=0, ddof=0)
    std[std == 0] = 1.0
    return (X - mean) / std, mean, std


def add_bias(X: np.ndarray) -> np.ndarray:
    """Thêm cột 1.0 ở đầu ma trận đặc trưng"""
    return np.concatenate([np.ones((X.shape[0], 1), dtype=float), X.astype(float)], axis=1)


def linreg_fit(X: np.ndarray, y: np.ndarray, ridge_alpha: float = 1e-6) -> np.ndarray:
    """Nghiệm (X^T X + alpha I)^(-1) X^T y; tự thêm bias bên ngoài nếu cần intercept"""
    X = np.asarray(X, float)
    y = np.asarray(y, float).ravel()
    A = X.T @ X + ridge_alpha * np.eye(X.shape[1])
    return np.linalg.solve(A, X.T @ y)


# --- Mã hoá phân loại -> id số (0..K-1), gom nhãn hiếm vào '__OTHER__' ---
def fit_category_encoder(values: np.ndarray, min_count: int = 1) -> Tuple[Dict[str, int], int]:
    """
    Tạo mapping {category -> id}. Nhãn xuất hiện < min_count -> gom vào '__OTHER__'
    Trả về (mapping, n_classes). '__OTHER__' chỉ có nếu có nhãn hiếm
    """
    uniq, counts = np.unique(np.asarray(values).astype(str), return_counts=True)
    mapping: Dict[str, int] = {}
    has_other = False
    for v, c in zip(uniq, counts):
        if c >= min_count and v != OTHER:
            mapping[v] = len(mapping)
        else:
            has_other = True
    if has_other:
        mapping[OTHER] = len(mapping)
    return mapping, len(mapping)


def transform_category(values: np.ndarray, mapping: Dict[str, int]) -> np.ndarray:
    """Nhãn lạ -> '__OTHER__' nếu có, ngược lại -> -1 (hàng one-hot toàn 0)"""
    other_id = mapping.get(OTHER, -1)
    vals = np.asarray(values).astype(str)
    return np.fromiter((mapping.get(v, other_id) for v in vals), dtype=int, count=vals.size)


def one_hot(codes: np.ndarray, n_classes: int) -> np.ndarray:
    """One-hot encode: shape (n_samples, n_classes). codes ngoài [0..K-1] -> hàng zero"""
    n = codes.shape[0]
    O = np.zeros((n, n_classes), dtype=float)
    m = (codes >= 0) & (codes < n_classes)
    O[np.arange(n)[m], codes[m]] = 1.0
    return O


def min_count_from_threshold(threshold: float, n_rows: int) -> int:
    """threshold < 1 là tỉ lệ, >= 1 là số đếm tuyệt đối"""
    if threshold <= 0:
        return 1
    if threshold < 1:
        return max(1, math.ceil(threshold * n_rows))
    return int(threshold)


# --- Khai báo pipeline ---
@dataclass(frozen=True)
class FeatureSpec:
    numeric: Tuple[str, ...] = ()
    categorical: Tuple[str, ...] = ()
    boolean: Tuple[str, ...] = ()
    impute_numeric: Tuple[str, ...] = ()
    impute_categorical: Tuple[str, ...] = ()
    impute_with: Tuple[str, ...] = ()   # predictor cố định cho imputation hồi quy
    other_threshold: float = 0.05
    scale: bool = True
    impute_neighbors: int = 5

    @property
    def columns(self) -> List[str]:
        cols = list(self.numeric) + list(self.categorical) + list(self.boolean)
        cols += [c for c in self.impute_with if c not in cols]
        return cols

    def validate(self) -> None:
        unknown = [c for c in self.impute_numeric if c not in self.numeric]
        unknown += [c for c in self.impute_categorical if c not in self.categorical]
        if unknown:
            raise ConfigurationError(f"Cột impute không nằm trong danh sách feature: {unknown}")
        if (self.impute_numeric or self.impute_categorical) and not self.impute_with:
            raise ConfigurationError("Cần impute_with khi có cột cần impute")
        if not self.columns:
            raise ConfigurationError("FeatureSpec rỗng")


def default_feature_spec() -> FeatureSpec:
    return FeatureSpec(
        numeric=(
            "latitude", "longitude", "minimum_nights", "number_of_reviews",
            "reviews_per_month", "calculated_host_listings_count", "availability_365",
        ),
        categorical=("neighbourhood_group", "neighbourhood", "room_type"),
        boolean=("has_reviews",),
        impute_numeric=("reviews_per_month",),
        impute_with=("number_of_reviews", "availability_365", "minimum_nights"),
    )


# --- Imputation bằng hồi quy theo các cột predictor cố định ---
@dataclass
class _PredictorScaler:
    columns: Tuple[str, ...]
    mean: np.ndarray
    std: np.ndarray

    def matrix(self, df: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
        """Trả về (P_chuẩn hoá, mask hàng đủ predictor)"""
        P = df[list(self.columns)].to_numpy(dtype=float)
        complete = ~np.isnan(P).any(axis=1)
        return (P - self.mean) / self.std, complete


@dataclass
class _NumericImputer:
    column: str
    fallback: float
    w: Optional[np.ndarray] = None   # None -> chỉ dùng fallback

    def fill(self, x: np.ndarray, P: np.ndarray, complete: np.ndarray) -> np.ndarray:
        x = x.copy()
        miss = np.isnan(x)
        if not miss.any():
            return x
        by_model = miss & complete if self.w is not None else np.zeros_like(miss)
        if by_model.any():
            x[by_model] = add_bias(P[by_model]) @ self.w
        x[miss & ~by_model] = self.fallback
        return x


@dataclass
class _CategoricalImputer:
    column: str
    fallback: str
    clf: Optional[KNeighborsClassifier] = None

    def fill(self, x: np.ndarray, P: np.ndarray, complete: np.ndarray) -> np.ndarray:
        x = x.copy()
        miss = pd.isna(x)
        if not miss.any():
            return x
        by_model = miss & complete if self.clf is not None else np.zeros_like(miss)
        if by_model.any():
            x[by_model] = self.clf.predict(P[by_model])
        x[miss & ~by_model] = self.fallback
        return x


def _fit_numeric_imputer(col: str, x: np.ndarray, P: np.ndarray, complete: np.ndarray) -> _NumericImputer:
    fallback = float(np.nanmean(x))
    rows = complete & ~np.isnan(x)
    if rows.sum() <= P.shape[1]:
        logger.warning("Impute %s: quá ít hàng đủ dữ liệu (%d), dùng mean", col, int(rows.sum()))
        return _NumericImputer(col, fallback)
    w = linreg_fit(add_bias(P[rows]), x[rows])
    return _NumericImputer(col, fallback, w)


def _fit_categorical_imputer(col: str, x: np.ndarray, P: np.ndarray, complete: np.ndarray,
                             n_neighbors: int) -> _CategoricalImputer:
    present = ~pd.isna(x)
    fallback = pd.Series(x[present]).mode().iloc[0]
    rows = complete & present
    labels = x[rows]
    if rows.sum() == 0 or np.unique(labels.astype(str)).size < 2:
        return _CategoricalImputer(col, str(fallback))
    clf = KNeighborsClassifier(n_neighbors=int(min(n_neighbors, rows.sum())))
    clf.fit(P[rows], labels.astype(str))
    return _CategoricalImputer(col, str(fallback), clf)


# --- Pipeline chưa fit: chỉ có fit(); transform nằm ở FittedFeaturePipeline ---
class FeaturePipeline:
    """
    Khai báo các bước biến đổi. `fit(train)` học mọi tham số trên train và trả về
    FittedFeaturePipeline; chỉ object đã fit mới có `transform`, nên không thể
    transform trước khi fit.
    """

    def __init__(self, spec: FeatureSpec):
        spec.validate()
        self.spec = spec

    def fit(self, df: pd.DataFrame) -> "FittedFeaturePipeline":
        spec = self.spec
        require_columns(df, spec.columns)
        if len(df) == 0:
            raise ConfigurationError("Không fit được pipeline trên bảng rỗng")

        # 1) imputation hồi quy
        scaler = None
        num_imputers: Dict[str, _NumericImputer] = {}
        cat_imputers: Dict[str, _CategoricalImputer] = {}
        if spec.impute_numeric or spec.impute_categorical:
            P_raw = df[list(spec.impute_with)].to_numpy(dtype=float)
            empty = [c for c, ok in zip(spec.impute_with, (~np.isnan(P_raw)).any(axis=0)) if not ok]
            if empty:
                raise ConfigurationError(
                    f"Cột predictor cho imputation bị thiếu toàn bộ: {empty}", details={"columns": empty}
                )
            _, mean, std = standardize(P_raw)
            scaler = _PredictorScaler(tuple(spec.impute_with), mean, std)
            P, complete = scaler.matrix(df)
            for c in spec.impute_numeric:
                x = df[c].to_numpy(dtype=float)
                if np.isnan(x).all():
                    raise ConfigurationError(f"Cột {c} thiếu toàn bộ, không impute được")
                num_imputers[c] = _fit_numeric_imputer(c, x, P, complete)
            for c in spec.impute_categorical:
                x = df[c].to_numpy(dtype=object)
                if pd.isna(x).all():
                    raise ConfigurationError(f"Cột {c} thiếu toàn bộ, không impute được")
                cat_imputers[c] = _fit_categorical_imputer(c, x, P, complete, spec.impute_neighbors)

        fitted = FittedFeaturePipeline(
            spec=spec,
            predictor_scaler=scaler,
            numeric_imputers=num_imputers,
            categorical_imputers=cat_imputers,
        )
        num, cats, bools = fitted._impute(df)

        # 2) giá trị dự phòng cho phần còn thiếu không khai báo impute
        fitted.numeric_fill = np.nan_to_num(np.nanmean(num, axis=0)) if num.size else np.zeros(0)
        fitted.boolean_fill = np.array(
            [float(pd.Series(b).mode().iloc[0]) if (~np.isnan(b)).any() else 0.0 for b in bools.T]
        )
        for c, x in cats.items():
            present = x[~pd.isna(x)]
            fitted.categorical_fill[c] = str(pd.Series(present).mode().iloc[0]) if present.size else OTHER

        # 3) gom nhãn hiếm + mapping one-hot
        min_count = min_count_from_threshold(spec.other_threshold, len(df))
        for c, x in cats.items():
            x = fitted._fill_categorical(c, x)
            fitted.encoders[c], _ = fit_category_encoder(x, min_count=min_count)

        # 4) center/scale cột số
        num = fitted._fill_numeric(num)
        if spec.scale and num.size:
            _, fitted.mean, fitted.std = standardize(num)
        else:
            fitted.mean = np.zeros(num.shape[1])
            fitted.std = np.ones(num.shape[1])
        return fitted

    def fit_transform(self, df: pd.DataFrame) -> Tuple["FittedFeaturePipeline", np.ndarray]:
        fitted = self.fit(df)
        return fitted, fitted.transform(df)


@dataclass
class FittedFeaturePipeline:
    spec: FeatureSpec
    predictor_scaler: Optional[_PredictorScaler]
    numeric_imputers: Dict[str, _NumericImputer]
    categorical_imputers: Dict[str, _CategoricalImputer]
    numeric_fill: np.ndarray = field(default_factory=lambda: np.zeros(0))
    boolean_fill: np.ndarray = field(default_factory=lambda: np.zeros(0))
    categorical_fill: Dict[str, str] = field(default_factory=dict)
    encoders: Dict[str, Dict[str, int]] = field(default_factory=dict)
    mean: np.ndarray = field(default_factory=lambda: np.zeros(0))
    std: np.ndarray = field(default_factory=lambda: np.ones(0))

    @property
    def feature_names(self) -> List[str]:
        names = list(self.spec.numeric) + list(self.spec.boolean)
        for c in self.spec.categorical:
            inv = sorted((v, k) for k, v in self.encoders[c].items())
            names.extend(f"{c}={lab}" for _, lab in inv)
        return names

    def _impute(self, df: pd.DataFrame) -> Tuple[np.ndarray, Dict[str, np.ndarray], np.ndarray]:
        spec = self.spec
        num = df[list(spec.numeric)].to_numpy(dtype=float, copy=True).reshape(len(df), len(spec.numeric))
        bools = df[list(spec.boolean)].to_numpy(dtype=float, copy=True).reshape(len(df), len(spec.boolean))
        cats = {c: df[c].to_numpy(dtype=object, copy=True) for c in spec.categorical}
        if self.predictor_scaler is None:
            return num, cats, bools
        P, complete = self.predictor_scaler.matrix(df)
        for c, imp in self.numeric_imputers.items():
            j = spec.numeric.index(c)
            num[:, j] = imp.fill(num[:, j], P, complete)
        for c, imp in self.categorical_imputers.items():
            cats[c] = imp.fill(cats[c], P, complete)
        return num, cats, bools

    def _fill_numeric(self, num: np.ndarray) -> np.ndarray:
        miss = np.isnan(num)
        if miss.any():
            num = np.where(miss, self.numeric_fill[None, :], num)
        return num

    def _fill_categorical(self, c: str, x: np.ndarray) -> np.ndarray:
        miss = pd.isna(x)
        if miss.any():
            x = x.copy()
            x[miss] = self.categorical_fill[c]
        return x.astype(str)

    def transform(self, df: pd.DataFrame) -> np.ndarray:
        """Áp dụng tham số đã học; không fit lại gì"""
        require_columns(df, self.spec.columns)
        num, cats, bools = self._impute(df)
        num = (self._fill_numeric(num) - self.mean) / self.std
        if bools.size:
            bools = np.where(np.isnan(bools), self.boolean_fill[None, :], bools)

        feats = [num, bools]
        for c in self.spec.categorical:
            mapping = self.encoders[c]
            codes = transform_category(self._fill_categorical(c, cats[c]), mapping)
            feats.append(one_hot(codes, len(mapping)))
        return np.column_stack(feats).astype(float)
