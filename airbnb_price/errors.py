"""Các exception dùng chung cho toàn bộ workflow chọn mô hình."""
from __future__ import annotations
from typing import Any, Dict, Optional


class ModelSelectionError(Exception):
    """Lỗi gốc; giữ thêm `details` để log/report."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ModelSelectionError, ValueError):
    """Cấu hình/cột dữ liệu sai -> báo ngay trước khi fit bất cứ thứ gì."""


class FinalEvaluationError(ModelSelectionError, RuntimeError):
    """Không refit/đánh giá được mô hình thắng trên toàn bộ tập train."""

    def __init__(self, model: str, params: Dict[str, Any], reason: str):
        super().__init__(
            f"Không refit được '{model}' với {params}: {reason}",
            details={"model": model, "params": dict(params), "reason": reason},
        )
