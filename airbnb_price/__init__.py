from .errors import (
    ModelSelectionError,
    ConfigurationError,
    FinalEvaluationError,
)

from .data_processing import (
    TARGET,
    numeric_cols,
    categorical_cols,
    boolean_cols,
    find_csv,
    load_listings,
    require_columns,
    parse_price,
    parse_bool,
    filter_price,
    filter_geo_bounds,
    fill_reviews_per_month_zero,
    add_derived_columns,
    clean_listings,
    missing_summary,
    describe_numeric,
    corr_matrix,
)

from .features import (
    OTHER,
    standardize,
    fit_category_encoder,
    transform_category,
    one_hot,
    FeatureSpec,
    default_feature_spec,
    FeaturePipeline,
    FittedFeaturePipeline,
)

from .models import (
    rmse,
    mae,
    r2_score_np,
    METRICS,
    get_metric,
    evaluate_regression,
    make_stratify_labels,
    stratified_train_test_idx,
    stratified_fold_ids,
    iter_folds,
    baseline_predict_mean,
)

from .registry import (
    ParamRange,
    grid_regular,
    PolynomialExpansion,
    ModelSpec,
    check_grids,
    default_registry,
    select_models,
)

from .config import SelectionConfig

from .tuning import (
    MetricRecord,
    tune,
    aggregate,
    best_per_model,
    select_best,
    final_evaluate,
    FinalResult,
    SelectionResult,
    split_dataset,
    run_model_selection,
)

from .visualization import (
    plot_hist,
    plot_bar_counts,
    plot_corr_heatmap,
    plot_box_by_cat,
    plot_tuning_curve,
    plot_model_comparison,
    plot_pred_vs_true,
    plot_residuals_hist,
)
