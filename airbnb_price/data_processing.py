# Đọc + làm sạch bảng listings Airbnb (pandas)
from __future__ import annotations
import glob
import logging
import os
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# --- Cấu hình cột mặc định (AB_NYC_2019 / Inside Airbnb listings) ---
TARGET = "price"
numeric_cols = [
    "latitude", "longitude",
    "minimum_nights", "number_of_reviews", "reviews_per_month",
    "calculated_host_listings_count", "availability_365",
]
categorical_cols = ["neighbourhood_group", "neighbourhood", "room_type"]
# chỉ có trong bản Inside Airbnb đầy đủ; parse nếu file có
boolean_cols = ["host_is_superhost", "instant_bookable"]

PRICE_CAP = 1000.0
NYC_LAT_RANGE = (40.5, 40.9)
NYC_LON_RANGE = (-74.25, -73.7)

_TRUE = {"t", "true", "1", "yes", "y"}
_FALSE = {"f", "false", "0", "no", "n"}


# --- Tìm file CSV trong thư mục ---
def find_csv(root: str) -> str:
    """Tìm file .csv trong root; ưu tiên 'listings.csv' rồi 'AB_NYC_2019.csv'"""
    for name in ("listings.csv", "AB_NYC_2019.csv"):
        cand = os.path.join(root, name)
        if os.path.isfile(cand):
            return cand
    files = sorted(glob.glob(os.path.join(root, "*.csv")) + glob.glob(os.path.join(root, "*.csv.gz")))
    if not files:
        raise FileNotFoundError(f"Không thấy file .csv trong: {root}")
    return files[0]


def load_listings(path_or_dir: str, columns: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """
    Đọc CSV listings thành DataFrame.
    - Nếu truyền thư mục: tự tìm file CSV
    - columns: nếu có, chỉ giữ các cột này (thiếu cột -> ConfigurationError)
    """
    csv_path = find_csv(path_or_dir) if os.path.isdir(path_or_dir) else path_or_dir
    df = pd.read_csv(csv_path, low_memory=False)
    logger.info("Loaded %s: %d rows x %d cols", csv_path, len(df), df.shape[1])
    if columns is not None:
        columns = list(columns)
        require_columns(df, columns)
        df = df[columns]
    return df


def require_columns(df: pd.DataFrame, columns: Iterable[str]) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ConfigurationError(
            f"Thiếu cột bắt buộc: {missing}", details={"missing": missing}
        )


# --- Chuẩn hoá kiểu dữ liệu ---
def parse_price(s: pd.Series) -> pd.Series:
    """'$1,234.00' -> 1234.0; giá trị bẩn -> NaN"""
    if pd.api.types.is_numeric_dtype(s):
        return s.astype(float)
    cleaned = s.astype(str).str.replace(r"[$,\s]", "", regex=True)
    return pd.to_numeric(cleaned, errors="coerce")


def parse_bool(s: pd.Series) -> pd.Series:
    """'t'/'f' (và các biến thể) -> 1.0/0.0, còn lại -> NaN"""
    if pd.api.types.is_bool_dtype(s):
        return s.astype(float)
    lowered = s.astype(str).str.strip().str.lower()
    out = pd.Series(np.nan, index=s.index, dtype=float)
    out[lowered.isin(_TRUE)] = 1.0
    out[lowered.isin(_FALSE)] = 0.0
    return out


# --- Lọc hàng ---
def filter_price(df: pd.DataFrame, target: str = TARGET, cap: Optional[float] = PRICE_CAP) -> pd.DataFrame:
    """Giữ 0 < price (<= cap nếu có cap); bỏ price NaN"""
    y = df[target]
    m = y.notna() & (y > 0)
    if cap is not None:
        m &= y <= cap
    logger.info("Price filter kept %d/%d rows (cap=%s)", int(m.sum()), len(df), cap)
    return df.loc[m]


def filter_geo_bounds(
    df: pd.DataFrame,
    lat_col: str = "latitude",
    lon_col: str = "longitude",
    lat_range: Tuple[float, float] = NYC_LAT_RANGE,
    lon_range: Tuple[float, float] = NYC_LON_RANGE,
) -> Tuple[pd.DataFrame, np.ndarray]:
    """
    Giữ các dòng có (lat, lon) nằm trong khung cho trước
    Trả về (df_filtered, mask_kept)
    """
    lat = df[lat_col].astype(float)
    lon = df[lon_col].astype(float)
    m = lat.between(*lat_range) & lon.between(*lon_range)
    return df.loc[m], m.to_numpy()


# --- reviews_per_month = 0 khi chưa có review ---
def fill_reviews_per_month_zero(df: pd.DataFrame) -> pd.DataFrame:
    """Chỉ điền các dòng number_of_reviews == 0; phần thiếu còn lại để pipeline impute"""
    if "reviews_per_month" not in df.columns or "number_of_reviews" not in df.columns:
        return df
    m = df["reviews_per_month"].isna() & (df["number_of_reviews"] == 0)
    if not m.any():
        return df
    out = df.copy()
    out.loc[m, "reviews_per_month"] = 0.0
    return out


def add_derived_columns(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    if "number_of_reviews" in out.columns:
        out["has_reviews"] = (out["number_of_reviews"].fillna(0) > 0).astype(float)
    return out


# --- Pipeline làm sạch thường dùng ---
def clean_listings(
    df: pd.DataFrame,
    *,
    target: str = TARGET,
    num_cols: Iterable[str] = numeric_cols,
    cat_cols: Iterable[str] = categorical_cols,
    bool_cols: Iterable[str] = boolean_cols,
    price_cap: Optional[float] = PRICE_CAP,
    geo_filter: bool = False,
) -> Tuple[pd.DataFrame, Dict[str, object]]:
    """
    Pipeline ngắn gọn, không học tham số nào từ dữ liệu (không leak):
      1) chọn cột (numeric + categorical + target bắt buộc; boolean nếu có)
      2) chuẩn hoá kiểu: price, boolean, numeric, categorical -> str
      3) lọc price (> 0, <= cap) và (tuỳ chọn) lọc geo
      4) reviews_per_month = 0 nếu chưa có review; thêm cột has_reviews
    Trả về (df_clean, report_dict).
    """
    num_cols, cat_cols = list(num_cols), list(cat_cols)
    required = num_cols + cat_cols + [target]
    require_columns(df, required)
    bools = [c for c in bool_cols if c in df.columns]

    out = df[required + bools].copy()
    out[target] = parse_price(out[target])
    for c in num_cols:
        out[c] = pd.to_numeric(out[c], errors="coerce")
    for c in cat_cols:
        out[c] = out[c].where(out[c].isna(), out[c].astype(str).str.strip())
    for c in bools:
        out[c] = parse_bool(out[c])

    report: Dict[str, object] = {"n_raw": len(df)}
    out = filter_price(out, target=target, cap=price_cap)
    report["n_after_price"] = len(out)

    if geo_filter:
        out, m = filter_geo_bounds(out)
        report["kept_geo_ratio"] = float(m.mean()) if m.size else 0.0

    out = fill_reviews_per_month_zero(out)
    out = add_derived_columns(out)
    out = out.reset_index(drop=True)
    report["n_clean"] = len(out)
    report["boolean_cols"] = bools
    return out, report


# --- Thống kê nhanh cho phần EDA ---
def missing_summary(df: pd.DataFrame) -> pd.DataFrame:
    """Bảng [column, missing_count, missing_rate_%], sắp giảm dần theo missing"""
    cnt = df.isna().sum()
    out = pd.DataFrame({
        "column": cnt.index,
        "missing_count": cnt.to_numpy(dtype=int),
        "missing_rate_%": 100.0 * cnt.to_numpy(dtype=float) / max(len(df), 1),
    })
    return out.sort_values("missing_count", ascending=False, kind="stable").reset_index(drop=True)


def describe_numeric(df: pd.DataFrame, num_cols: Iterable[str]) -> pd.DataFrame:
    """min, p25, p50, p75, max, mean, std cho các cột số có trong df"""
    keep = [c for c in num_cols if c in df.columns]
    d = df[keep].astype(float).describe(percentiles=[0.25, 0.5, 0.75]).T
    d = d.rename(columns={"25%": "p25", "50%": "p50", "75%": "p75"})
    return d[["min", "p25", "p50", "p75", "max", "mean", "std"]]


def corr_matrix(df: pd.DataFrame, num_cols: Iterable[str]) -> Tuple[np.ndarray, List[str]]:
    """Pearson corr giữa các cột số; bỏ hàng có NaN"""
    keep = [c for c in num_cols if c in df.columns]
    X = df[keep].astype(float).dropna()
    if len(X) < 2:
        return np.full((len(keep), len(keep)), np.nan), keep
    return np.corrcoef(X.to_numpy(), rowvar=False), keep
