#!/usr/bin/env python3
"""
Bundle Adjuster - Main Execution Script

Runs bundle adjustment on either a synthetic scene with known ground truth
or a COLMAP text reconstruction, prints the solver report and optionally
writes the report and the refined model to disk.

Usage:
    # Synthetic data (default)
    python main.py --dataset synthetic

    # COLMAP data
    python main.py --dataset colmap --cameras_txt path/to/cameras.txt \
        --images_txt path/to/images.txt --points3D_txt path/to/points3D.txt
"""

import argparse
import sys
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt

from bundle_adjuster.core.loss_functions import create_loss_function
from bundle_adjuster.core.parallel import ParallelConfig
from bundle_adjuster.core.problem import BAProblem
from bundle_adjuster.data.io_utils import load_colmap_model, print_colmap_summary, write_colmap_model
from bundle_adjuster.data.observations import BundleBlock
from bundle_adjuster.data.synthetic import create_synthetic_scene, perturb_bundle_block
from bundle_adjuster.solvers.linear_solvers import LinearSolverType
from bundle_adjuster.solvers.sparse_lm_solver import SolverSummary, SparseLMSolver
from bundle_adjuster.solvers.strategies import RegularizedSchurStrategy, SchurStrategy
from bundle_adjuster.visualizations.plot_cameras import plot_bundle_block
from bundle_adjuster.visualizations.plot_reprojection_error import plot_cost_history, plot_reprojection_errors

SOLVER_TYPES = {
    'sparse': LinearSolverType.SPARSE,
    'dense': LinearSolverType.DENSE,
    'iterative': LinearSolverType.ITERATIVE,
    'adaptive': LinearSolverType.ADAPTIVE,
}


def load_dataset(args: argparse.Namespace) -> BundleBlock:
    """
    Create the synthetic scene or load the COLMAP reconstruction.

    Args:
        args: Parsed arguments namespace

    Returns:
        BundleBlock holding the initial estimate
    """
    if args.dataset == 'synthetic':
        print(f"Creating synthetic dataset: {args.num_cameras} cameras, {args.num_points} points")
        ground_truth = create_synthetic_scene(
            num_cameras=args.num_cameras,
            num_points=args.num_points,
            noise_std=1.0,
            random_seed=args.seed
        )
        print(f"Generated {len(ground_truth.observations)} observations")
        # The first camera stays at ground truth
        return perturb_bundle_block(ground_truth, random_seed=args.seed, fixed_pose_ids=(0,))

    print(f"Loading COLMAP dataset:")
    print(f"  Cameras: {args.cameras_txt}")
    print(f"  Images: {args.images_txt}")
    print(f"  Points3D: {args.points3D_txt}")
    bundle_block = load_colmap_model(args.cameras_txt, args.images_txt, args.points3D_txt)
    print_colmap_summary(bundle_block)
    return bundle_block


def build_problem(args: argparse.Namespace, bundle_block: BundleBlock) -> BAProblem:
    if args.strategy == 'regularized':
        strategy = RegularizedSchurStrategy()
    else:
        strategy = SchurStrategy()

    problem = BAProblem(
        loss_function=create_loss_function(args.loss, args.loss_scale),
        parallel=ParallelConfig(args.threads),
        strategy=strategy,
        linear_solver_type=SOLVER_TYPES[args.solver],
        debug_folder=args.debug_folder
    )
    problem.initialize(bundle_block)
    print(f"Problem: {problem}")
    return problem


def plot_state(problem: BAProblem, bundle_block: BundleBlock, label: str) -> None:
    problem.update(bundle_block)
    plot_reprojection_errors(problem.residual, f"{label} Reprojection Errors", show=False)
    plot_bundle_block(bundle_block, f"{label} 3D Scene", show=False)


def print_summary(summary: SolverSummary, initial_error, dataset_type: str) -> None:
    """
    Print a summary of bundle adjustment results.

    Args:
        summary: Solver outcome
        initial_error: (mean, median, max) reprojection error before optimization
        dataset_type: Type of dataset used
    """
    print("\n" + "=" * 60)
    print(f"Bundle Adjustment Results Summary - {dataset_type.title()} Dataset")
    print("=" * 60)

    print(f"  State: {summary.state.value} ({summary.message})")
    print(f"  Iterations: {summary.iterations}")
    print(f"  Initial cost: {summary.initial_cost:.6e}")
    print(f"  Final cost: {summary.final_cost:.6e}")
    if summary.initial_cost > 0 and np.isfinite(summary.final_cost):
        improvement = (summary.initial_cost - summary.final_cost) / summary.initial_cost * 100
        print(f"  Improvement percentage: {improvement:.2f}%")

    print(f"\nReprojection Error Statistics:")
    print(f"  Initial - Mean: {initial_error[0]:.3f} px, Median: {initial_error[1]:.3f} px, Max: {initial_error[2]:.3f} px")
    final_error = summary.reprojection_error
    print(f"  Final   - Mean: {final_error[0]:.3f} px, Median: {final_error[1]:.3f} px, Max: {final_error[2]:.3f} px")
    print(f"  Total time: {summary.total_time:.3f} s")
    print("=" * 60)


def run_bundle_adjustment(args: argparse.Namespace) -> SolverSummary:
    """
    Main routine: load, solve, report, export.

    Args:
        args: Parsed arguments namespace

    Returns:
        The solver summary
    """
    print("=" * 60)
    print(f"Bundle Adjuster - {args.dataset.title()} Dataset")
    print("=" * 60)

    print(f"\n1. Loading {args.dataset} dataset...")
    bundle_block = load_dataset(args)

    print("\n2. Building problem...")
    problem = build_problem(args, bundle_block)
    initial_error = problem.reprojection_error(update=True)
    print(f"Initial reprojection error: mean {initial_error[0]:.3f} px")

    if args.plots:
        plot_state(problem, bundle_block.copy(), "Initial")

    print("\n3. Running bundle adjustment optimization...")
    solver = SparseLMSolver(
        problem,
        max_iterations=args.max_iterations,
        verbose=True
    )
    summary = solver.run()

    problem.update(bundle_block)
    print_summary(summary, initial_error, args.dataset)

    if args.report:
        problem.save_report(args.report)
        print(f"Report written to {args.report}")
    if args.output:
        write_colmap_model(bundle_block, args.output)
        print(f"Refined model written to {args.output}")

    if args.plots:
        plot_state(problem, bundle_block, "Final")
        plot_cost_history(summary.cost_history, show=False)
        plt.show()

    return summary


def parse_arguments(argv=None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Bundle Adjuster - Run optimization on synthetic or COLMAP data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with synthetic data (default)
  python main.py --dataset synthetic --threads 4 --solver sparse

  # Run with COLMAP data and a robust loss
  python main.py --dataset colmap --cameras_txt cameras.txt --images_txt images.txt \\
      --points3D_txt points3D.txt --loss huber --loss-scale 2.0 --output refined/
        """
    )

    parser.add_argument('--dataset', type=str, choices=['synthetic', 'colmap'], default='synthetic',
                        help='Type of dataset to use (default: synthetic)')
    parser.add_argument('--cameras_txt', type=str,
                        help='Path to COLMAP cameras.txt file (required for colmap dataset)')
    parser.add_argument('--images_txt', type=str,
                        help='Path to COLMAP images.txt file (required for colmap dataset)')
    parser.add_argument('--points3D_txt', type=str,
                        help='Path to COLMAP points3D.txt file (required for colmap dataset)')
    parser.add_argument('--num-cameras', type=int, default=6,
                        help='Number of synthetic cameras (default: 6)')
    parser.add_argument('--num-points', type=int, default=100,
                        help='Number of synthetic points (default: 100)')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed of the synthetic scene (default: 42)')
    parser.add_argument('--solver', type=str, choices=sorted(SOLVER_TYPES), default='adaptive',
                        help='Reduced camera system solver (default: adaptive)')
    parser.add_argument('--strategy', type=str, choices=['schur', 'regularized'], default='schur',
                        help='Point elimination strategy (default: schur)')
    parser.add_argument('--threads', type=int, default=1,
                        help='Worker threads for evaluation and accumulation (default: 1)')
    parser.add_argument('--loss', type=str, choices=['trivial', 'huber', 'cauchy'], default='trivial',
                        help='Robust loss function (default: trivial)')
    parser.add_argument('--loss-scale', type=float, default=1.0,
                        help='Scale of the robust loss in pixels (default: 1.0)')
    parser.add_argument('--max-iterations', type=int, default=50,
                        help='Maximum number of accepted iterations (default: 50)')
    parser.add_argument('--report', type=str,
                        help='Write the solver report to this file')
    parser.add_argument('--debug-folder', type=str, default=None,
                        help='Save the report, cost history and iteration log to this folder')
    parser.add_argument('--output', type=str,
                        help='Write the refined model as COLMAP text files into this directory')
    parser.add_argument('--no-plots', dest='plots', action='store_false',
                        help='Disable matplotlib figures')

    return parser.parse_args(argv)


def validate_arguments(args: argparse.Namespace) -> None:
    """
    Validate command line arguments.

    Raises:
        ValueError: If arguments are invalid
    """
    if args.dataset == 'colmap':
        for flag in ('cameras_txt', 'images_txt', 'points3D_txt'):
            value = getattr(args, flag)
            if not value:
                raise ValueError(f"COLMAP dataset requires --{flag} argument")
            if not Path(value).exists():
                raise ValueError(f"COLMAP {flag.replace('_txt', '.txt')} file not found: {value}")
    if args.threads < 1:
        raise ValueError(f"--threads must be at least 1, got {args.threads}")
    if args.loss_scale <= 0:
        raise ValueError(f"--loss-scale must be positive, got {args.loss_scale}")
    if args.max_iterations < 0:
        raise ValueError(f"--max-iterations must be non-negative, got {args.max_iterations}")


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        Process exit status: 0 on convergence, 1 on failure
    """
    try:
        args = parse_arguments(argv)
        validate_arguments(args)
        summary = run_bundle_adjustment(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 1
    except ValueError as e:
        print(f"\n\nError: {e}")
        return 1

    return 0 if summary.converged else 1


if __name__ == "__main__":
    sys.exit(main())
