"""
Network hyperparameters.

`Network(...)` keyword arguments are resolved once into a `NetworkConfig`
(normalised names, defaults filled in). Each forward/backward/apply call then
receives an immutable `TrainingContext` snapshot derived from it, so layers
read hyperparameters without holding a reference to the network.
"""
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Union


def normalize_name(value: str) -> str:
    """Lower-case a configuration name and strip underscores and whitespace."""
    return re.sub(r"(_|\s)", "", value).lower()


# Learning rates used when none is given, keyed by update function then activation
_UPDATE_FN_LEARNING_RATES = {"rmsprop": 0.001, "adam": 0.01}
_ACTIVATION_LEARNING_RATES = {
    "relu": 0.01, "lrelu": 0.01, "rrelu": 0.01, "elu": 0.01,
    "tanh": 0.001, "lecuntanh": 0.001,
}
_UPDATE_FN_ALIASES = {"vanillaupdatefn": "sgd", "vanilla": "sgd"}


@dataclass
class ConvDefaults:
    """Network-wide defaults for convolutional layers that don't set their own."""
    filter_size: Optional[int] = None
    zero_padding: Optional[int] = None
    stride: Optional[int] = None


@dataclass
class PoolDefaults:
    """Network-wide defaults for pooling layers that don't set their own."""
    size: Optional[int] = None
    stride: Optional[int] = None


@dataclass
class WeightsConfig:
    distribution: Union[str, Callable] = "xavieruniform"
    limit: Optional[float] = None
    mean: Optional[float] = None
    std_deviation: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.distribution, str):
            self.distribution = normalize_name(self.distribution)
        if self.distribution == "uniform" and self.limit is None:
            self.limit = 0.1
        elif self.distribution == "gaussian":
            self.mean = self.mean or 0.0
            self.std_deviation = self.std_deviation or 0.05

    def parameters(self) -> Dict[str, float]:
        """Keyword parameters for the distribution, skipping unset ones."""
        values = {"limit": self.limit, "mean": self.mean, "std_deviation": self.std_deviation}
        return {key: value for key, value in values.items() if value is not None}


@dataclass
class NetworkConfig:
    learning_rate: float
    update_fn: str = "sgd"
    activation: Any = "sigmoid"
    cost: Any = "meansquarederror"
    dropout: float = 1.0
    l1: float = 0.0
    l2: float = 0.0
    max_norm: Optional[float] = None
    rms_decay: Optional[float] = None
    rho: Optional[float] = None
    momentum: float = 0.9
    lrelu_slope: float = -0.0005
    elu_alpha: float = 1.0
    channels: Optional[int] = None
    conv: ConvDefaults = field(default_factory=ConvDefaults)
    pool: PoolDefaults = field(default_factory=PoolDefaults)
    weights: WeightsConfig = field(default_factory=WeightsConfig)

    @property
    def activation_name(self) -> str:
        if isinstance(self.activation, str):
            return self.activation
        return getattr(self.activation, "name", self.activation.__class__.__name__.lower())

    @property
    def l1_enabled(self) -> bool:
        return self.l1 != 0

    @property
    def l2_enabled(self) -> bool:
        return self.l2 != 0

    @classmethod
    def resolve(cls, learning_rate: Optional[float] = None, update_fn: Optional[str] = "sgd",
                activation: Any = "sigmoid", cost: Any = "meansquarederror",
                dropout: Union[float, bool] = 1, l1: Union[float, bool, None] = None,
                l2: Union[float, bool, None] = None, max_norm: Union[float, bool, None] = None,
                rms_decay: Optional[float] = None, rho: Optional[float] = None,
                momentum: Optional[float] = None, lrelu_slope: Optional[float] = None,
                elu_alpha: Optional[float] = None, channels: Optional[int] = None,
                conv: Optional[Dict[str, int]] = None, pool: Optional[Dict[str, int]] = None,
                weights_config: Optional[Dict[str, Any]] = None) -> "NetworkConfig":
        """
        Builds a config from `Network` keyword arguments, filling in defaults.

        Boolean flags switch a feature on with its default value: `l1=True` is
        0.005, `l2=True` is 0.001 and `max_norm=True` is 1000. `dropout=False`
        disables dropout (keep probability 1).
        """
        update_fn = normalize_name(update_fn) if update_fn else "sgd"
        update_fn = _UPDATE_FN_ALIASES.get(update_fn, update_fn)
        if isinstance(activation, str):
            activation = normalize_name(activation)
        if isinstance(cost, str):
            cost = normalize_name(cost)

        config = cls(
            learning_rate=0.0,
            update_fn=update_fn,
            activation=activation,
            cost=cost,
            dropout=1.0 if dropout is False or dropout is None else float(dropout),
            l1=(0.005 if l1 is True else float(l1)) if l1 else 0.0,
            l2=(0.001 if l2 is True else float(l2)) if l2 else 0.0,
            max_norm=(1000.0 if max_norm is True else float(max_norm)) if max_norm else None,
            rms_decay=(0.99 if rms_decay is None else rms_decay) if update_fn == "rmsprop" else None,
            rho=(0.95 if rho is None else rho) if update_fn == "adadelta" else None,
            momentum=0.9 if momentum is None else momentum,
            lrelu_slope=-0.0005 if lrelu_slope is None else lrelu_slope,
            elu_alpha=1.0 if elu_alpha is None else elu_alpha,
            channels=channels,
            conv=ConvDefaults(**(conv or {})),
            pool=PoolDefaults(**(pool or {})),
            weights=WeightsConfig(**(weights_config or {})),
        )

        if learning_rate:
            config.learning_rate = learning_rate
        elif update_fn in _UPDATE_FN_LEARNING_RATES:
            config.learning_rate = _UPDATE_FN_LEARNING_RATES[update_fn]
        else:
            config.learning_rate = _ACTIVATION_LEARNING_RATES.get(config.activation_name, 0.2)

        logging.debug(f"Resolved network config: {config}")
        return config


@dataclass(frozen=True)
class TrainingContext:
    """
    Read-only hyperparameters handed to every layer call.

    Attributes:
        learning_rate: Step size used by the update rules.
        update_fn: Normalised optimizer name.
        keep_prob: Dropout keep probability (1 disables dropout).
        training: Whether dropout masks are drawn on forward.
        mini_batch_size: Examples accumulated per parameter update.
        iterations: Examples seen so far, used by adam's bias correction.
    """
    learning_rate: float
    update_fn: str = "sgd"
    keep_prob: float = 1.0
    training: bool = False
    mini_batch_size: int = 1
    iterations: int = 0
    l1: float = 0.0
    l2: float = 0.0
    max_norm: Optional[float] = None
    rms_decay: Optional[float] = None
    rho: Optional[float] = None
    momentum: float = 0.9

    @classmethod
    def from_config(cls, config: NetworkConfig, **overrides) -> "TrainingContext":
        context = cls(
            learning_rate=config.learning_rate,
            update_fn=config.update_fn,
            keep_prob=config.dropout,
            l1=config.l1,
            l2=config.l2,
            max_norm=config.max_norm,
            rms_decay=config.rms_decay,
            rho=config.rho,
            momentum=config.momentum,
        )
        return replace(context, **overrides) if overrides else context


@dataclass
class RegularizationTotals:
    """
    Network-wide sums written by every layer while applying its gradients.

    `l2_error`/`l1_error` are None unless the matching coefficient is
    configured. `max_norm_total` collects the squared post-update weights
    when max-norm is configured and is reset after each finalisation.
    """
    l2_error: Optional[float] = None
    l1_error: Optional[float] = None
    max_norm_total: Optional[float] = None

    @classmethod
    def for_config(cls, config: NetworkConfig) -> "RegularizationTotals":
        return cls(
            l2_error=0.0 if config.l2_enabled else None,
            l1_error=0.0 if config.l1_enabled else None,
            max_norm_total=0.0 if config.max_norm is not None else None,
        )

    def reset_penalties(self):
        if self.l2_error is not None:
            self.l2_error = 0.0
        if self.l1_error is not None:
            self.l1_error = 0.0
