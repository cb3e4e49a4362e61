"""
Cấu hình cho một lần chạy chọn mô hình.

Gom mọi tham số có ảnh hưởng tới kết quả (seed, tỉ lệ chia, số fold, metric,
tập mô hình, khai báo feature) vào một dataclass để dễ tái lập thí nghiệm.
"""
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .data_processing import TARGET
from .errors import ConfigurationError
from .features import FeatureSpec, default_feature_spec
from .models import METRICS

RANDOM_STATE = 42
TRAIN_PROP = 0.8
CV_FOLDS = 10
STRATA_BINS = 4


@dataclass
class SelectionConfig:
    target: str = TARGET
    seed: int = RANDOM_STATE
    train_prop: float = TRAIN_PROP
    n_folds: int = CV_FOLDS
    n_bins: int = STRATA_BINS
    metric: str = "rmse"
    n_jobs: int = 1
    convergence_as_failure: bool = True
    models: Optional[List[str]] = None   # None -> toàn bộ registry
    feature_spec: FeatureSpec = field(default_factory=default_feature_spec)

    def validate(self) -> None:
        """Kiểm tra sớm, trước khi fit bất cứ thứ gì"""
        if not 0.0 < self.train_prop < 1.0:
            raise ConfigurationError(f"train_prop phải nằm trong (0, 1), nhận {self.train_prop}")
        if self.n_folds < 2:
            raise ConfigurationError(f"n_folds phải >= 2, nhận {self.n_folds}")
        if self.n_bins < 1:
            raise ConfigurationError(f"n_bins phải >= 1, nhận {self.n_bins}")
        if self.metric not in METRICS:
            raise ConfigurationError(f"Metric không hỗ trợ: {self.metric!r}")
        if self.target in self.feature_spec.columns:
            raise ConfigurationError(f"Cột mục tiêu {self.target!r} không được dùng làm feature")
        self.feature_spec.validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SelectionConfig":
        d = dict(d)
        spec = d.pop("feature_spec", None)
        if isinstance(spec, dict):
            spec = FeatureSpec(**{k: tuple(v) if isinstance(v, list) else v for k, v in spec.items()})
        return cls(**d, feature_spec=spec if spec is not None else default_feature_spec())
