from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from jax import Array

from kernel_expfam.estimator import KernelExpFamily
from kernel_expfam.registry import ESTIMATOR_REGISTRY


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Config key {key!r} must be an integer, got {value!r}")
    return value


@dataclass(frozen=True)
class EstimatorConfig:
    """
    Hyperparameters of a single estimator, typically read from a YAML file::

        estimator: Nystrom
        sigma: 1.0
        lmbda: 0.1
        num_basis: 20
        seed: 0
    """

    estimator: str
    sigma: float
    lmbda: float
    num_basis: Optional[int] = None
    basis: Optional[tuple[int, ...]] = None
    seed: int = 0
    ridge: float = 0.0

    def __post_init__(self):
        if self.estimator not in ESTIMATOR_REGISTRY:
            raise ValueError(
                f"Unknown estimator {self.estimator!r}, expected one of {sorted(ESTIMATOR_REGISTRY)}"
            )
        if self.estimator == "Full" and (
            self.num_basis is not None or self.basis is not None
        ):
            raise ValueError("The Full estimator takes neither `num_basis` nor `basis`")

    @classmethod
    def from_dict(cls, cfg: dict[str, Any]) -> "EstimatorConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(cfg) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")

        missing = {"estimator", "sigma", "lmbda"} - set(cfg)
        if missing:
            raise ValueError(f"Missing config keys: {sorted(missing)}")

        return cls(
            estimator=str(cfg["estimator"]),
            sigma=float(cfg["sigma"]),
            lmbda=float(cfg["lmbda"]),
            num_basis=None
            if cfg.get("num_basis") is None
            else _as_int(cfg["num_basis"], "num_basis"),
            basis=None
            if cfg.get("basis") is None
            else tuple(_as_int(i, "basis") for i in cfg["basis"]),
            seed=int(cfg.get("seed", 0)),
            ridge=float(cfg.get("ridge", 0.0)),
        )


def load_config(path: str | Path) -> EstimatorConfig:
    with open(path) as f:
        cfg = yaml.safe_load(f)
    if not isinstance(cfg, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return EstimatorConfig.from_dict(cfg)


def build_estimator(data: Array, cfg: EstimatorConfig) -> KernelExpFamily:
    """
    Constructs the (unfitted) estimator described by ``cfg`` on ``data`` of shape ``(d, n)``.
    """
    cls = ESTIMATOR_REGISTRY[cfg.estimator]
    if cfg.estimator == "Nystrom":
        return cls(
            data,
            cfg.sigma,
            cfg.lmbda,
            basis=cfg.basis,
            num_basis=cfg.num_basis,
            key=cfg.seed,
            ridge=cfg.ridge,
        )
    return cls(data, cfg.sigma, cfg.lmbda, ridge=cfg.ridge)
