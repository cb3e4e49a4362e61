# Trực quan hoá với Matplotlib + Seaborn
from __future__ import annotations
from typing import List, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns


# --- Histogram cho cột số ---
def plot_hist(x, bins: int = 30, log: bool = False, title: str = "", xlabel: str = "", ylabel: str = "Count"):
    """Histogram nhanh; bỏ NaN trước khi vẽ"""
    x = np.asarray(x, dtype=float)
    x = x[~np.isnan(x)]
    fig = plt.figure()
    plt.hist(x, bins=bins, log=log)
    if title: plt.title(title)
    if xlabel: plt.xlabel(xlabel)
    plt.ylabel(ylabel)
    plt.tight_layout()
    return fig


# --- Bar chart tần suất cho cột phân loại (có top-k) ---
def plot_bar_counts(categories, topk: int = 10, title: str = "", rotation: int = 0):
    """Vẽ bar chart cho top-k giá trị xuất hiện nhiều nhất"""
    counts = pd.Series(categories).astype(str).value_counts().head(topk)
    fig = plt.figure()
    plt.bar(counts.index, counts.to_numpy())
    if title: plt.title(title)
    plt.ylabel("Count")
    plt.xticks(rotation=rotation, ha="right")
    plt.tight_layout()
    return fig


# --- Heatmap ma trận tương quan ---
def plot_corr_heatmap(C: np.ndarray, labels: List[str], title: str = "Correlation"):
    fig = plt.figure()
    sns.heatmap(C, xticklabels=labels, yticklabels=labels, annot=False, square=True,
                cmap="coolwarm", vmin=-1, vmax=1)
    plt.title(title)
    plt.tight_layout()
    return fig


# --- Boxplot số theo nhóm (ví dụ: price theo room_type) ---
def plot_box_by_cat(df: pd.DataFrame, value: str, category: str, title: str = ""):
    fig = plt.figure()
    sns.boxplot(data=df, x=category, y=value, showfliers=False)
    if title: plt.title(title)
    plt.tight_layout()
    return fig


# --- Kết quả tuning ---
def plot_tuning_curve(table: pd.DataFrame, model: str, param: str, metric: str = "rmse",
                      hue: Optional[str] = None):
    """mean ± std_err theo một siêu tham số; tham số còn lại (nếu có) tô màu theo `hue`"""
    t = table[(table["model"] == model) & table["mean"].notna()].copy()
    if t.empty:
        raise ValueError(f"Không có kết quả cho mô hình {model!r}")
    t[param] = t["params"].map(lambda p: p[param])
    groups = [(None, t)] if hue is None else list(t.assign(**{hue: t["params"].map(lambda p: p[hue])}).groupby(hue))
    fig = plt.figure()
    for key, g in groups:
        g = g.sort_values(param)
        plt.errorbar(g[param], g["mean"], yerr=g["std_err"], marker="o", capsize=3,
                     label=None if key is None else f"{hue}={key}")
    vals = t[param].astype(float)
    if (vals > 0).all() and vals.max() / vals.min() > 100:
        plt.xscale("log")
    plt.xlabel(param); plt.ylabel(f"CV {metric}"); plt.title(f"{model}: {metric} theo {param}")
    if hue is not None:
        plt.legend(fontsize="small")
    plt.tight_layout()
    return fig


def plot_model_comparison(ranking: pd.DataFrame, metric: str = "rmse", title: str = "Best CV score per model"):
    """Barh: điểm CV tốt nhất của từng họ mô hình (có error bar = std_err)"""
    r = ranking.iloc[::-1]
    fig = plt.figure()
    plt.barh(r["model"], r["mean"], xerr=r["std_err"], capsize=3)
    plt.xlabel(f"CV {metric}"); plt.title(title)
    plt.tight_layout()
    return fig


# --- Plot cho hồi quy ---
def plot_pred_vs_true(y_true: np.ndarray, y_pred: np.ndarray, title: str = "Pred vs True"):
    """Scatter y_true vs y_pred + đường y=x."""
    y = np.asarray(y_true, float).ravel()
    p = np.asarray(y_pred, float).ravel()
    fig = plt.figure()
    plt.scatter(y, p, s=10, alpha=0.6)
    lims = [min(np.min(y), np.min(p)), max(np.max(y), np.max(p))]
    plt.plot(lims, lims, "--")
    plt.xlabel("True"); plt.ylabel("Predicted"); plt.title(title)
    plt.tight_layout()
    return fig


def plot_residuals_hist(y_true: np.ndarray, y_pred: np.ndarray, bins: int = 50, title: str = "Residuals"):
    """Histogram residual (y - yhat)."""
    e = np.asarray(y_true, float).ravel() - np.asarray(y_pred, float).ravel()
    fig = plt.figure()
    plt.hist(e, bins=bins)
    plt.title(title); plt.xlabel("Residual"); plt.ylabel("Count")
    plt.tight_layout()
    return fig
