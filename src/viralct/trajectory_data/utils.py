import numpy as np


def floor_slopes(raw_slopes: np.ndarray, slope_floor: float) -> np.ndarray:
    """Clamp down-slopes so every trajectory keeps rising towards the detection limit."""
    return np.maximum(raw_slopes, slope_floor)


def linear_ct(peaks: np.ndarray, slopes: np.ndarray, max_time: int) -> np.ndarray:
    """
    Noise-free Ct values for every individual and time point.
    peaks, slopes: (N,)
    Returns (N, max_time + 1).
    """
    times = np.arange(max_time + 1, dtype=np.float64)
    return peaks[:, None] + slopes[:, None] * times[None, :]


def retained_length(observed: np.ndarray, detection_limit: float) -> int:
    """
    Number of leading observations kept for one series.

    Follow-up stops at the first value above the detection limit; that value is
    kept and everything after it is dropped.
    """
    above = np.flatnonzero(observed > detection_limit)
    if above.size == 0:
        return int(observed.shape[0])
    return int(above[0]) + 1
