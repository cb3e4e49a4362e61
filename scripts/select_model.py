#!/usr/bin/env python3
from pathlib import Path
import argparse
import json
import logging
import sys

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from airbnb_price.config import SelectionConfig
from airbnb_price.data_processing import (
    TARGET, clean_listings, corr_matrix, load_listings, missing_summary, numeric_cols,
)
from airbnb_price.errors import ModelSelectionError
from airbnb_price.registry import default_registry
from airbnb_price.tuning import run_model_selection
from airbnb_price import visualization as viz

logger = logging.getLogger("select_model")


def save_eda_plots(df, out_dir: Path) -> None:
    viz.plot_hist(df[TARGET], bins=50, title="Price", xlabel="price").savefig(out_dir / "price_hist.png")
    viz.plot_bar_counts(df["room_type"], title="Room type").savefig(out_dir / "room_type_counts.png")
    viz.plot_box_by_cat(df, TARGET, "room_type", title="Price by room type").savefig(out_dir / "price_by_room_type.png")
    C, labels = corr_matrix(df, numeric_cols + [TARGET])
    viz.plot_corr_heatmap(C, labels).savefig(out_dir / "corr.png")
    plt.close("all")


def save_result_plots(result, out_dir: Path) -> None:
    metric = result.config.metric
    viz.plot_model_comparison(result.ranking, metric).savefig(out_dir / "model_comparison.png")
    for name, param, hue in [("ridge", "alpha", None), ("lasso", "alpha", None),
                             ("knn", "n_neighbors", None), ("polynomial", "poly__degree", None),
                             ("elastic_net", "alpha", "l1_ratio")]:
        if (result.table["model"] == name).any() and result.table.loc[result.table["model"] == name, "mean"].notna().any():
            viz.plot_tuning_curve(result.table, name, param, metric, hue=hue).savefig(out_dir / f"tune_{name}.png")
    f = result.final
    viz.plot_pred_vs_true(f.y_true, f.y_pred, title=f"{f.model} (test)").savefig(out_dir / "pred_vs_true.png")
    viz.plot_residuals_hist(f.y_true, f.y_pred).savefig(out_dir / "residuals.png")
    plt.close("all")


def main():
    ap = argparse.ArgumentParser(description="Chọn mô hình dự đoán giá Airbnb bằng k-fold CV")
    ap.add_argument("--csv", type=str, required=True, help="File CSV listings (hoặc thư mục chứa nó)")
    ap.add_argument("--out", type=str, default="outputs", help="Thư mục ghi kết quả")
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--prop", type=float, default=0.8, help="Tỉ lệ train")
    ap.add_argument("--folds", type=int, default=10)
    ap.add_argument("--bins", type=int, default=4, help="Số bin stratify cho price")
    ap.add_argument("--metric", type=str, default="rmse", choices=["rmse", "mae", "rsq"])
    ap.add_argument("--models", nargs="+", default=None, choices=sorted(default_registry()))
    ap.add_argument("--n-jobs", type=int, default=1)
    ap.add_argument("--price-cap", type=float, default=1000.0)
    ap.add_argument("--geo-filter", action="store_true", help="Chỉ giữ listing trong khung toạ độ NYC")
    ap.add_argument("--plots", action="store_true")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(levelname)s - %(message)s")

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    config = SelectionConfig(
        seed=args.seed, train_prop=args.prop, n_folds=args.folds, n_bins=args.bins,
        metric=args.metric, n_jobs=args.n_jobs, models=args.models,
    )

    try:
        raw = load_listings(args.csv)
        df, report = clean_listings(raw, price_cap=args.price_cap, geo_filter=args.geo_filter)
        logger.info("Clean report: %s", report)
        logger.info("Missing:\n%s", missing_summary(df).head(10).to_string(index=False))
        if args.plots:
            save_eda_plots(df, out_dir)
        result = run_model_selection(df, config)
    except (ModelSelectionError, FileNotFoundError) as e:
        logger.error("%s", e)
        sys.exit(1)

    result.table.to_csv(out_dir / "cv_metrics.csv", index=False)
    result.ranking.to_csv(out_dir / "ranking.csv", index=False)
    final = {
        "model": result.final.model,
        "params": result.final.params,
        "metric": result.final.metric,
        "test_value": result.final.value,
        "baseline_test_value": result.final.baseline_value,
        "test_scores": result.final.scores,
        "cv_mean": float(result.best["mean"]),
        "cv_std_err": float(result.best["std_err"]),
        "config": {k: v for k, v in config.to_dict().items() if k != "feature_spec"},
    }
    (out_dir / "final.json").write_text(json.dumps(final, indent=2, default=str), encoding="utf-8")
    if args.plots:
        save_result_plots(result, out_dir)
    print(json.dumps({k: final[k] for k in ("model", "params", "metric", "test_value")}, default=str))


if __name__ == "__main__":
    main()
