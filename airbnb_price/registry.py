# Danh sách mô hình + lưới siêu tham số cho từng họ mô hình
from __future__ import annotations
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.ensemble import GradientBoostingRegressor, RandomForestRegressor
from sklearn.linear_model import ElasticNet, Lasso, LinearRegression, Ridge
from sklearn.neighbors import KNeighborsRegressor
from sklearn.pipeline import Pipeline

from .errors import ConfigurationError


@dataclass(frozen=True)
class ParamRange:
    """
    low..high chia đều `levels` mức; log10=True -> low/high là số mũ (10**x).
    descending=True -> liệt kê từ high về low (mô hình đơn giản nhất đứng đầu lưới).
    """
    low: float
    high: float
    levels: int
    log10: bool = False
    integer: bool = False
    descending: bool = False

    def values(self) -> List[Any]:
        if self.levels < 1:
            raise ConfigurationError(f"levels phải >= 1, nhận {self.levels}")
        v = np.linspace(self.low, self.high, self.levels)
        if self.log10:
            v = 10.0 ** v
        if self.integer:
            out = [int(x) for x in np.unique(np.round(v).astype(int))]
        else:
            out = [float(x) for x in v]
        return out[::-1] if self.descending else out


GridSpec = Mapping[str, Union[ParamRange, Sequence[Any]]]


def grid_regular(params: GridSpec) -> List[Dict[str, Any]]:
    """Lưới đều (tích Descartes); không có tham số -> một điểm rỗng {}"""
    if not params:
        return [{}]
    names = list(params)
    axes = [p.values() if isinstance(p, ParamRange) else list(p) for p in params.values()]
    return [dict(zip(names, combo)) for combo in itertools.product(*axes)]


# --- Đa thức theo từng cột liên tục (không tạo tương tác) ---
class PolynomialExpansion(BaseEstimator, TransformerMixin):
    """
    Thêm x^2..x^degree cho các cột liên tục (> 2 giá trị khác nhau lúc fit);
    cột nhị phân/one-hot giữ nguyên.
    """

    def __init__(self, degree: int = 2):
        self.degree = degree

    def fit(self, X, y=None):
        X = np.asarray(X, float)
        self.columns_ = np.array(
            [j for j in range(X.shape[1]) if np.unique(X[:, j]).size > 2], dtype=int
        )
        self.n_features_in_ = X.shape[1]
        return self

    def transform(self, X):
        X = np.asarray(X, float)
        base = X[:, self.columns_]
        extra = [base ** d for d in range(2, int(self.degree) + 1)]
        return np.column_stack([X] + extra) if extra else X


@dataclass(frozen=True)
class ModelSpec:
    name: str
    factory: Callable[[Optional[int]], BaseEstimator]   # factory(random_state) -> estimator chưa fit
    grid: Sequence[Dict[str, Any]] = field(default_factory=lambda: [{}])

    def make(self, params: Mapping[str, Any], random_state: Optional[int] = None) -> BaseEstimator:
        est = self.factory(random_state)
        if params:
            est.set_params(**params)
        return est


def check_grids(specs: Mapping[str, ModelSpec]) -> None:
    """Mọi khoá trong lưới phải là tham số của estimator (kể cả `step__param` của Pipeline)"""
    for name, spec in specs.items():
        valid = set(spec.factory(None).get_params(deep=True))
        bad = sorted({k for params in spec.grid for k in params if k not in valid})
        if bad:
            raise ConfigurationError(f"Lưới của {name!r} có tham số không hợp lệ: {bad}")


def _polynomial(random_state: Optional[int] = None) -> Pipeline:
    return Pipeline([("poly", PolynomialExpansion()), ("lm", LinearRegression())])


def default_registry() -> Dict[str, ModelSpec]:
    """
    8 họ mô hình so sánh trong báo cáo, theo thứ tự trình bày.
    Mỗi lưới liệt kê từ điểm đơn giản nhất (alpha lớn, k lớn, bậc thấp) nên khi hoà
    metric, grid_id nhỏ hơn = mô hình trơn hơn.
    """
    specs = [
        ModelSpec("linear", lambda rs: LinearRegression()),
        ModelSpec(
            "ridge", lambda rs: Ridge(),
            grid_regular({"alpha": ParamRange(-5, 5, 50, log10=True, descending=True)}),
        ),
        ModelSpec(
            "lasso", lambda rs: Lasso(max_iter=10000, random_state=rs),
            grid_regular({"alpha": ParamRange(-3, 3, 20, log10=True, descending=True)}),
        ),
        ModelSpec(
            "polynomial", _polynomial,
            grid_regular({"poly__degree": ParamRange(1, 5, 5, integer=True)}),
        ),
        ModelSpec(
            "knn", lambda rs: KNeighborsRegressor(),
            grid_regular({"n_neighbors": ParamRange(1, 10, 10, integer=True, descending=True)}),
        ),
        ModelSpec(
            "elastic_net", lambda rs: ElasticNet(max_iter=10000, random_state=rs),
            grid_regular({
                "alpha": ParamRange(-3, 3, 10, log10=True, descending=True),
                "l1_ratio": ParamRange(0.1, 1.0, 10),
            }),
        ),
        ModelSpec(
            "random_forest", lambda rs: RandomForestRegressor(random_state=rs),
            grid_regular({
                "max_features": ParamRange(0.2, 1.0, 3),
                "n_estimators": [100, 300],
                "min_samples_split": [10, 20],
            }),
        ),
        ModelSpec(
            "boosted_trees", lambda rs: GradientBoostingRegressor(random_state=rs),
            grid_regular({
                "n_estimators": ParamRange(50, 200, 3, integer=True),
                "learning_rate": ParamRange(0.01, 0.1, 3),
                "min_samples_split": [20, 40],
            }),
        ),
    ]
    return {s.name: s for s in specs}


def select_models(registry: Mapping[str, ModelSpec], names: Optional[Iterable[str]]) -> Dict[str, ModelSpec]:
    """Lấy tập con theo tên; None -> toàn bộ. Tên lạ -> ConfigurationError"""
    if names is None:
        return dict(registry)
    names = list(names)
    unknown = [n for n in names if n not in registry]
    if unknown:
        raise ConfigurationError(f"Mô hình không có trong registry: {unknown}; có {sorted(registry)}")
    if not names:
        raise ConfigurationError("Danh sách mô hình rỗng")
    return {n: registry[n] for n in names}
