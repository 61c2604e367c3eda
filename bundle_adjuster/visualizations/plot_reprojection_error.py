import numpy as np
import numpy.typing as npt
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from typing import Optional, Sequence


def plot_reprojection_errors(
    residual: npt.NDArray[np.float64],
    title: Optional[str] = None,
    show: bool = True
) -> Figure:
    """
    Plot histogram of reprojection errors.

    Args:
        residual: Residuals of shape (M, 2), one (dx, dy) row per projection
        title: Optional title for the plot. If None, auto-generates title with statistics.
        show: Display the figure

    Returns:
        The matplotlib figure
    """
    assert residual.ndim == 2 and residual.shape[1] == 2, \
        f"Residuals must be an (M, 2) array, got shape {residual.shape}"

    reprojection_errors = np.linalg.norm(residual, axis=1)
    num_observations = reprojection_errors.shape[0]
    if num_observations:
        mean_error = float(np.mean(reprojection_errors))
        max_error = float(np.max(reprojection_errors))
        median_error = float(np.median(reprojection_errors))
    else:
        mean_error = max_error = median_error = 0.0

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.hist(reprojection_errors, bins=50, alpha=0.7, color='skyblue', edgecolor='black')
    ax.axvline(mean_error, color='red', linestyle='--', linewidth=2, label=f'Mean: {mean_error:.3f} px')
    ax.axvline(median_error, color='green', linestyle='--', linewidth=2, label=f'Median: {median_error:.3f} px')

    if title is None:
        title = f"Reprojection Error Distribution\n"
        title += f"Mean: {mean_error:.3f} px, Max: {max_error:.3f} px, "
        title += f"Observations: {num_observations}"

    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.set_xlabel('Reprojection Error (pixels)', fontsize=12)
    ax.set_ylabel('Frequency', fontsize=12)
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    if show:
        plt.show()
    return fig


def plot_residual_scatter(
    residual: npt.NDArray[np.float64],
    title: Optional[str] = None,
    show: bool = True
) -> Figure:
    """
    Plot scatter plot of 2D residuals showing systematic errors.

    Args:
        residual: Residuals of shape (M, 2)
        title: Optional title for the plot.
        show: Display the figure
    """
    assert residual.ndim == 2 and residual.shape[1] == 2, \
        f"Residuals must be an (M, 2) array, got shape {residual.shape}"

    dx = residual[:, 0]
    dy = residual[:, 1]

    fig, ax = plt.subplots(figsize=(10, 8))
    ax.scatter(dx, dy, alpha=0.6, s=20, c='blue', edgecolors='black', linewidth=0.5)
    ax.axhline(y=0, color='red', linestyle='-', alpha=0.5, linewidth=1)
    ax.axvline(x=0, color='red', linestyle='-', alpha=0.5, linewidth=1)

    if title is None:
        rms = np.sqrt(np.mean(dx**2 + dy**2)) if dx.size else 0.0
        title = f"2D Residual Scatter Plot\n"
        title += f"RMS: {rms:.3f} px, "
        title += f"Observations: {len(dx)}"

    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.set_xlabel('X Residual (pixels)', fontsize=12)
    ax.set_ylabel('Y Residual (pixels)', fontsize=12)
    ax.axis('equal')
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    if show:
        plt.show()
    return fig


def plot_cost_history(
    cost_history: Sequence[float],
    title: str = "Convergence",
    show: bool = True
) -> Figure:
    """
    Plot the robust cost after every accepted step on a log scale.

    Args:
        cost_history: Costs starting with the initial cost, e.g. SolverSummary.cost_history
        title: Title for the plot
        show: Display the figure
    """
    costs = np.asarray(cost_history, dtype=np.float64)

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(np.arange(costs.size), costs, 'o-', color='tab:blue')
    if costs.size and np.all(costs > 0):
        ax.set_yscale('log')
    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.set_xlabel('Iteration', fontsize=12)
    ax.set_ylabel('Cost', fontsize=12)
    ax.grid(True, alpha=0.3)
    fig.tight_layout()

    if show:
        plt.show()
    return fig
