"""
Hidden Markov Regime Model

Four-state model (bull, bear, high_volatility, normal) over discretised
(daily return, realized volatility) observations. The transition matrix,
emission matrix and state distribution are plain numpy arrays so filtering
and forecasting can be tested independently of the baseline classifier.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

import numpy as np
import structlog

from ..errors import InsufficientData, InvalidInput, NonConvergence
from ..models import RegimeType

logger = structlog.get_logger(__name__)

STATES = (
    RegimeType.BULL,
    RegimeType.BEAR,
    RegimeType.HIGH_VOLATILITY,
    RegimeType.NORMAL,
)
N_STATES = len(STATES)

# Daily return (%) bins: < -2, < 0, < 1, < 3, >= 3
RETURN_BIN_EDGES = np.array([-2.0, 0.0, 1.0, 3.0])
# Annualized volatility (%) bins: < 15, < 25, < 35, >= 35
VOL_BIN_EDGES = np.array([15.0, 25.0, 35.0])
N_RETURN_BINS = len(RETURN_BIN_EDGES) + 1
N_VOL_BINS = len(VOL_BIN_EDGES) + 1
N_SYMBOLS = N_RETURN_BINS * N_VOL_BINS

MAX_FORECAST_HORIZON = 30

DEFAULT_TRANSITION_MATRIX = np.array([
    [0.85, 0.05, 0.02, 0.08],  # bull
    [0.05, 0.80, 0.10, 0.05],  # bear
    [0.10, 0.15, 0.65, 0.10],  # high_volatility
    [0.15, 0.10, 0.05, 0.70],  # normal
])

# Per-state preference over return bins and vol bins; emissions are their
# outer product so each row sums to 1.
_RETURN_PROFILES = np.array([
    [0.05, 0.20, 0.35, 0.30, 0.10],
    [0.25, 0.40, 0.20, 0.10, 0.05],
    [0.35, 0.20, 0.10, 0.10, 0.25],
    [0.05, 0.35, 0.40, 0.15, 0.05],
])
_VOL_PROFILES = np.array([
    [0.50, 0.35, 0.10, 0.05],
    [0.10, 0.30, 0.40, 0.20],
    [0.02, 0.08, 0.30, 0.60],
    [0.30, 0.45, 0.20, 0.05],
])


def default_emission_matrix() -> np.ndarray:
    """4 x 20 emission matrix indexed by symbol = return_bin * 4 + vol_bin."""
    return np.stack([
        np.outer(_RETURN_PROFILES[s], _VOL_PROFILES[s]).flatten()
        for s in range(N_STATES)
    ])


def observation_symbol(daily_return_pct: float, volatility_pct: float) -> int:
    """Map a (daily return %, annualized vol %) pair to one of 20 symbols."""
    return_bin = int(np.searchsorted(RETURN_BIN_EDGES, daily_return_pct, side='right'))
    vol_bin = int(np.searchsorted(VOL_BIN_EDGES, volatility_pct, side='right'))
    return return_bin * N_VOL_BINS + vol_bin


def confidence_level(probability: float) -> str:
    if probability > 0.7:
        return "high"
    if probability > 0.5:
        return "medium"
    return "low"


def probabilities_by_state(vec: np.ndarray) -> Dict[str, float]:
    return {state.value: float(p) for state, p in zip(STATES, vec)}


def one_hot(regime: RegimeType) -> np.ndarray:
    vec = np.zeros(N_STATES)
    vec[STATES.index(regime)] = 1.0
    return vec


def validate_distribution(vec: Sequence[float]) -> np.ndarray:
    """Check a state vector has four finite entries summing to 1 (within 0.01)."""
    arr = np.asarray(vec, dtype=float)
    if arr.shape != (N_STATES,):
        raise InvalidInput(f"State vector must have {N_STATES} entries, got {arr.shape}")
    if not np.all(np.isfinite(arr)) or (arr < 0).any():
        raise InvalidInput("State vector must be finite and non-negative")
    if abs(arr.sum() - 1.0) > 0.01:
        raise InvalidInput(f"State vector must sum to 1, got {arr.sum():.4f}")
    return arr / arr.sum()


def _check_stochastic(matrix: np.ndarray, shape: tuple, name: str) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.shape != shape:
        raise InvalidInput(f"{name} must have shape {shape}, got {matrix.shape}")
    if (matrix < 0).any() or not np.allclose(matrix.sum(axis=1), 1.0, atol=1e-6):
        raise InvalidInput(f"{name} rows must be non-negative and sum to 1")
    return matrix


class HiddenMarkovModel:
    """Discrete HMM with forward filtering and matrix-power forecasting."""

    def __init__(
        self,
        transition: Optional[np.ndarray] = None,
        emission: Optional[np.ndarray] = None,
        initial: Optional[np.ndarray] = None,
    ) -> None:
        self.transition = _check_stochastic(
            DEFAULT_TRANSITION_MATRIX if transition is None else transition,
            (N_STATES, N_STATES),
            "Transition matrix",
        )
        self.emission = _check_stochastic(
            default_emission_matrix() if emission is None else emission,
            (N_STATES, N_SYMBOLS),
            "Emission matrix",
        )
        self.initial = (
            np.full(N_STATES, 1.0 / N_STATES) if initial is None else validate_distribution(initial)
        )
        self.training_observations = 0

    def filter(self, observations: Sequence[int]) -> np.ndarray:
        """Forward algorithm: P(state_T | o_1..o_T), normalised at each step.

        Raises:
            InsufficientData: If there are no observations
            NonConvergence: If the state mass collapses to zero or goes non-finite
        """
        obs = list(observations)
        if not obs:
            raise InsufficientData(series="regime observations", actual=0, required=1)

        probs = self.initial.copy()
        for t, symbol in enumerate(obs):
            if not 0 <= symbol < N_SYMBOLS:
                raise InvalidInput(f"Observation symbol out of range: {symbol}")
            prior = probs if t == 0 else probs @ self.transition
            posterior = prior * self.emission[:, symbol]
            total = posterior.sum()
            if not np.isfinite(total) or total <= 0:
                raise NonConvergence(
                    "State probabilities collapsed during filtering",
                    step=t,
                    symbol=symbol,
                )
            probs = posterior / total

        return probs

    def forecast(self, current: Sequence[float], horizon_days: int) -> np.ndarray:
        """Project a state distribution ``horizon_days`` steps ahead."""
        if not 1 <= horizon_days <= MAX_FORECAST_HORIZON:
            raise InvalidInput(
                f"Horizon must be between 1 and {MAX_FORECAST_HORIZON}, got {horizon_days}",
                horizon_days=horizon_days,
            )

        probs = validate_distribution(current)
        for _ in range(horizon_days):
            probs = probs @ self.transition
            total = probs.sum()
            if not np.isfinite(total) or total <= 0:
                raise NonConvergence("State probabilities collapsed during forecasting")
            probs = probs / total

        return probs

    @classmethod
    def fit_from_labels(
        cls,
        observations: Sequence[int],
        labels: Sequence[RegimeType],
        smoothing: float = 1.0,
    ) -> "HiddenMarkovModel":
        """Estimate transition and emission matrices by smoothed counting.

        Args:
            observations: Observation symbols, one per day
            labels: Regime label for each day (e.g. baseline classifications)
            smoothing: Laplace pseudo-count added to every cell

        Returns:
            A new HiddenMarkovModel
        """
        if len(observations) != len(labels):
            raise InvalidInput(
                f"Observations length {len(observations)} doesn't match labels length {len(labels)}"
            )
        if len(observations) < 2:
            raise InsufficientData(series="training labels", actual=len(observations), required=2)

        idx = [STATES.index(RegimeType(label)) for label in labels]

        transition = np.full((N_STATES, N_STATES), smoothing)
        for prev, curr in zip(idx[:-1], idx[1:]):
            transition[prev, curr] += 1

        emission = np.full((N_STATES, N_SYMBOLS), smoothing)
        for state, symbol in zip(idx, observations):
            emission[state, symbol] += 1

        initial = np.bincount(idx, minlength=N_STATES) + smoothing

        logger.info(
            "hmm_fit_from_labels: model trained",
            observations=len(observations),
            label_counts=np.bincount(idx, minlength=N_STATES).tolist(),
        )

        model = cls(
            transition=transition / transition.sum(axis=1, keepdims=True),
            emission=emission / emission.sum(axis=1, keepdims=True),
            initial=initial / initial.sum(),
        )
        model.training_observations = len(observations)
        return model
