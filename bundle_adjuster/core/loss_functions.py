import numpy as np
import numpy.typing as npt
from typing import Tuple


class LossFunction:
    """
    Robust loss applied to squared residual norms.

    A loss maps s = |e|^2 to rho(s). Evaluation returns rho(s) and rho'(s);
    the optimizer weights residuals and Jacobian rows by sqrt(rho'(s)).
    The default is the plain squared loss.
    """

    name = "trivial"

    def evaluate(self, squared_norms: npt.NDArray[np.float64]) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        return squared_norms.copy(), np.ones_like(squared_norms)

    def cost(self, squared_norms: npt.NDArray[np.float64]) -> float:
        return float(np.sum(self.evaluate(squared_norms)[0]))

    def weights(self, squared_norms: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        return self.evaluate(squared_norms)[1]

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class HuberLoss(LossFunction):
    """rho(s) = s for s <= a^2, 2a sqrt(s) - a^2 otherwise."""

    name = "huber"

    def __init__(self, scale: float = 1.0) -> None:
        if scale <= 0:
            raise ValueError(f"Loss scale must be positive, got {scale}")
        self.scale = float(scale)

    def evaluate(self, squared_norms):
        b = self.scale * self.scale
        inlier = squared_norms <= b
        root = np.sqrt(np.maximum(squared_norms, b))
        rho = np.where(inlier, squared_norms, 2.0 * self.scale * root - b)
        weight = np.where(inlier, 1.0, self.scale / root)
        return rho, weight

    def __repr__(self) -> str:
        return f"HuberLoss(scale={self.scale})"


class CauchyLoss(LossFunction):
    """rho(s) = a^2 log(1 + s / a^2)."""

    name = "cauchy"

    def __init__(self, scale: float = 1.0) -> None:
        if scale <= 0:
            raise ValueError(f"Loss scale must be positive, got {scale}")
        self.scale = float(scale)

    def evaluate(self, squared_norms):
        b = self.scale * self.scale
        ratio = squared_norms / b
        return b * np.log1p(ratio), 1.0 / (1.0 + ratio)

    def __repr__(self) -> str:
        return f"CauchyLoss(scale={self.scale})"


def create_loss_function(name: str, scale: float = 1.0) -> LossFunction:
    """
    Build a loss function from its name.

    Args:
        name: One of 'trivial', 'huber', 'cauchy'
        scale: Residual magnitude (pixels) where the robust loss starts to saturate

    Raises:
        ValueError: If the name is unknown
    """
    name = name.lower()
    if name in ("trivial", "none", "null"):
        return LossFunction()
    if name == "huber":
        return HuberLoss(scale)
    if name == "cauchy":
        return CauchyLoss(scale)
    raise ValueError(f"Unknown loss function: {name}")
