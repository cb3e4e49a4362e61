from __future__ import annotations
from typing import Callable, Dict, Iterator, NamedTuple, Tuple, Union
import numpy as np

from .errors import ConfigurationError

SeedLike = Union[int, np.random.Generator]


def as_generator(seed: SeedLike) -> np.random.Generator:
    """int -> Generator mới; Generator -> dùng thẳng (luồng random được truyền tường minh)"""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


# --- Chỉ số lỗi cơ bản ---
def rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    e = np.asarray(y_pred, float).ravel() - np.asarray(y_true, float).ravel()
    return float(np.sqrt(np.mean(e * e)))


def mae(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    e = np.abs(np.asarray(y_pred, float).ravel() - np.asarray(y_true, float).ravel())
    return float(np.mean(e))


def r2_score_np(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    R^2 = 1 - SSE/SST (có thể âm nếu mô hình tệ hơn baseline mean)
    """
    y = np.asarray(y_true, float).ravel()
    p = np.asarray(y_pred, float).ravel()
    ss_res = np.sum((y - p) ** 2)
    ss_tot = np.sum((y - np.mean(y)) ** 2)
    # nếu y hằng, quy ước R^2 = 0.0
    if ss_tot == 0:
        return 0.0
    return float(1.0 - ss_res / ss_tot)


class Metric(NamedTuple):
    name: str
    fn: Callable[[np.ndarray, np.ndarray], float]
    greater_is_better: bool


METRICS: Dict[str, Metric] = {
    "rmse": Metric("rmse", rmse, False),
    "mae": Metric("mae", mae, False),
    "rsq": Metric("rsq", r2_score_np, True),
}


def get_metric(name: str) -> Metric:
    try:
        return METRICS[name]
    except KeyError:
        raise ConfigurationError(f"Metric không hỗ trợ: {name!r}; chọn một trong {sorted(METRICS)}") from None


def evaluate_regression(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
    """Gom metrics: RMSE, MAE, R2"""
    return {name: m.fn(y_true, y_pred) for name, m in METRICS.items()}


# ============== SPLITTING ==============
# --- 1) Tạo nhãn stratify từ y ---
def make_stratify_labels(
    y: np.ndarray,
    *,
    task: str = "auto",
    n_bins: int = 4,
    strategy: str = "quantile",  # 'quantile' | 'uniform'
) -> np.ndarray:
    """
    Trả về mảng nhãn để stratify.
    - task='classification': dùng y trực tiếp.
    - task='regression'   : băm y thành bin rồi dùng bin-id.
    - task='auto'         : nếu số unique của y <= 20 và đều là số nguyên -> classification.
    """
    y = np.asarray(y)
    if task == "auto":
        uniq = np.unique(y)
        if uniq.size <= 20 and np.all(np.equal(np.mod(uniq, 1), 0)):
            task = "classification"
        else:
            task = "regression"

    if task == "classification":
        return np.unique(y.astype(str), return_inverse=True)[1]

    y_float = y.astype(float)
    # NaN -> median để không rớt bin
    if np.isnan(y_float).any():
        med = float(np.nanmedian(y_float))
        y_float = np.where(np.isnan(y_float), med, y_float)

    if strategy == "quantile":
        edges = np.unique(np.quantile(y_float, np.linspace(0, 1, n_bins + 1)))
    elif strategy == "uniform":
        edges = np.linspace(float(np.min(y_float)), float(np.max(y_float)), n_bins + 1)
    else:
        raise ConfigurationError(f"strategy không hợp lệ: {strategy!r}")

    # mọi giá trị như nhau -> một nhóm duy nhất
    if edges.size <= 2:
        return np.zeros(y_float.shape[0], dtype=int)

    # digitize theo các biên trong -> bin-id trong [0..n_bins-1]
    return np.digitize(y_float, edges[1:-1], right=False).astype(int)


def _strata(labels: np.ndarray, rng: np.random.Generator) -> Iterator[np.ndarray]:
    """Index từng nhóm, đã xáo trộn; thứ tự nhóm cố định (sorted)"""
    for lab in np.unique(labels):
        lab_idx = np.flatnonzero(labels == lab)
        rng.shuffle(lab_idx)
        yield lab_idx


# --- 2) Stratified train/test split ---
def stratified_train_test_idx(
    y: np.ndarray,
    *,
    prop: float = 0.8,
    rng: SeedLike = 42,
    n_bins: int = 4,
    task: str = "auto",
    strategy: str = "quantile",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Chia index (train, test) theo stratify; mỗi nhóm lấy round(n * prop) cho train.
    Hai tập rời nhau và hợp lại đủ toàn bộ index.
    """
    if not 0.0 < prop < 1.0:
        raise ConfigurationError(f"prop phải nằm trong (0, 1), nhận {prop}")
    y = np.asarray(y)
    if y.size < 2:
        raise ConfigurationError("Cần ít nhất 2 dòng để chia train/test")
    rng = as_generator(rng)
    labels = make_stratify_labels(y, task=task, n_bins=n_bins, strategy=strategy)

    idx_train, idx_test = [], []
    for lab_idx in _strata(labels, rng):
        n_train = int(round(lab_idx.size * prop))
        idx_train.append(lab_idx[:n_train])
        idx_test.append(lab_idx[n_train:])

    train = np.sort(np.concatenate(idx_train))
    test = np.sort(np.concatenate(idx_test))
    if train.size == 0 or test.size == 0:
        raise ConfigurationError("Không thể stratify: một trong hai tập bị rỗng. Giảm n_bins hoặc đổi prop.")
    return train, test


# --- 3) Stratified K-Fold: gán fold id cho từng dòng ---
def stratified_fold_ids(
    y: np.ndarray,
    *,
    k: int = 10,
    rng: SeedLike = 42,
    n_bins: int = 4,
    task: str = "auto",
    strategy: str = "quantile",
) -> np.ndarray:
    """
    Trả về fold_ids (len = len(y)), giá trị trong [0..k-1].
    Nối index đã xáo của từng nhóm rồi chia vòng tròn cho k fold:
    kích thước các fold lệch nhau tối đa 1 và mỗi nhóm trải đều qua các fold.
    """
    y = np.asarray(y)
    if k < 2:
        raise ConfigurationError(f"k phải >= 2, nhận {k}")
    if k > y.size:
        raise ConfigurationError(f"k={k} lớn hơn số dòng ({y.size})")
    rng = as_generator(rng)
    labels = make_stratify_labels(y, task=task, n_bins=n_bins, strategy=strategy)

    order = np.concatenate(list(_strata(labels, rng)))
    fold_ids = np.empty(y.size, dtype=int)
    fold_ids[order] = np.arange(order.size) % k
    return fold_ids


def iter_folds(fold_ids: np.ndarray) -> Iterator[Tuple[int, np.ndarray, np.ndarray]]:
    """Sinh (fold, train_idx, val_idx); train = hợp của k-1 fold còn lại"""
    fold_ids = np.asarray(fold_ids)
    for f in np.unique(fold_ids):
        val_mask = fold_ids == f
        yield int(f), np.flatnonzero(~val_mask), np.flatnonzero(val_mask)


# --- Baseline: dự đoán trung bình train ---
def baseline_predict_mean(y_train: np.ndarray, n_pred: int) -> np.ndarray:
    """Dự đoán hằng = mean(y_train)"""
    c = float(np.mean(np.asarray(y_train, float)))
    return np.full(n_pred, c, dtype=float)
