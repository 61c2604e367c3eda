import time
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from ..core import normal_equations
from ..core.residuals import (
    compute_reprojection_error,
    evaluate_jacobian,
    evaluate_residual,
    evaluate_square_residual,
)
from ..core.problem import BAProblem


class SolverState(Enum):
    EVALUATING = "evaluating"
    BUILDING = "building"
    SOLVING = "solving"
    UPDATING = "updating"
    CONVERGED = "converged"
    FAILED = "failed"


class IterationRecord:
    """One attempted step of the update loop."""

    def __init__(self, iteration: int, cost: float, damping: float, accepted: bool,
                 step_norm: float, elapsed: float) -> None:
        self.iteration = iteration
        self.cost = cost
        self.damping = damping
        self.accepted = accepted
        self.step_norm = step_norm
        self.elapsed = elapsed

    def __repr__(self) -> str:
        return (f"IterationRecord(iteration={self.iteration}, cost={self.cost:.6e}, "
                f"damping={self.damping:.3e}, accepted={self.accepted})")


class SolverSummary:
    """
    Outcome of a solve.

    Attributes:
        state: CONVERGED or FAILED
        message: Termination reason
        iterations: Number of accepted steps
        initial_cost: Robust cost before optimization
        final_cost: Robust cost of the parameters left in the problem
        cost_history: Cost after every accepted step, initial cost first
        records: Every attempted step, accepted or not
        reprojection_error: Final (mean, median, max) error in pixels
        total_time: Wall-clock seconds
    """

    def __init__(self) -> None:
        self.state = SolverState.EVALUATING
        self.message = ""
        self.iterations = 0
        self.initial_cost = float('nan')
        self.final_cost = float('nan')
        self.cost_history: List[float] = []
        self.records: List[IterationRecord] = []
        self.reprojection_error = (0.0, 0.0, 0.0)
        self.total_time = 0.0

    @property
    def converged(self) -> bool:
        return self.state == SolverState.CONVERGED

    def __repr__(self) -> str:
        return (f"SolverSummary(state={self.state.value}, iterations={self.iterations}, "
                f"initial_cost={self.initial_cost:.6e}, final_cost={self.final_cost:.6e}, "
                f"message='{self.message}')")


class SparseLMSolver:
    """
    Sparse Levenberg-Marquardt solver for bundle adjustment.

    Implements the LM algorithm with Schur complement for efficient
    solution of large-scale bundle adjustment problems. Each iteration
    evaluates residuals and Jacobians, accumulates the normal equations,
    applies Marquardt damping to the block diagonals, eliminates the points
    and solves the reduced camera system through the problem's strategy,
    then tries the step. Rejected steps are retried with the same
    Jacobians and a larger damping.
    """

    def __init__(
        self,
        problem: BAProblem,
        max_iterations: int = 50,
        initial_damping: float = 1e-4,
        damping_factor: float = 10.0,
        min_damping: float = 1e-12,
        max_damping: float = 1e16,
        function_tolerance: float = 1e-8,
        gradient_tolerance: float = 1e-10,
        parameter_tolerance: float = 1e-10,
        max_consecutive_failures: int = 10,
        pose_indexes: Optional[Sequence[int]] = None,
        verbose: bool = True
    ) -> None:
        """
        Initialize the sparse LM solver.

        Args:
            problem: Bundle adjustment problem, modified in place
            max_iterations: Maximum number of accepted steps
            initial_damping: Initial Levenberg-Marquardt damping parameter
            damping_factor: Factor to scale damping parameter
            min_damping: Lower bound of the damping after accepted steps
            max_damping: Damping above which no further decrease is sought
            function_tolerance: Relative cost decrease that counts as converged
            gradient_tolerance: Gradient max-norm that counts as converged
            parameter_tolerance: Relative step norm that counts as converged
            max_consecutive_failures: Allowed consecutive failed solves or rejected steps
            pose_indexes: Optional subset of poses to optimize; other poses stay fixed
            verbose: Print progress
        """
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {max_iterations}")
        if initial_damping <= 0 or damping_factor <= 1:
            raise ValueError("initial_damping must be positive and damping_factor greater than 1")

        self.problem = problem
        self.max_iterations = max_iterations
        self.initial_damping = initial_damping
        self.damping_factor = damping_factor
        self.min_damping = min_damping
        self.max_damping = max_damping
        self.function_tolerance = function_tolerance
        self.gradient_tolerance = gradient_tolerance
        self.parameter_tolerance = parameter_tolerance
        self.max_consecutive_failures = max_consecutive_failures
        self.pose_indexes = None if pose_indexes is None else sorted(set(int(i) for i in pose_indexes))
        self.verbose = verbose

        self.damping = initial_damping
        self.state = SolverState.EVALUATING

    def _log(self, message: str) -> None:
        self.problem.report_stream.write(message + "\n")
        if self.verbose:
            print(message)

    def _finish(self, summary: SolverSummary, state: SolverState, message: str) -> None:
        self.state = state
        summary.state = state
        summary.message = message

    def run(self) -> SolverSummary:
        """
        Run the sparse Levenberg-Marquardt optimization.

        Parameters are left at the last accepted values whatever the
        outcome.

        Returns:
            SolverSummary describing convergence or failure
        """
        problem = self.problem
        strategy = problem.strategy
        summary = SolverSummary()
        start_time = time.perf_counter()
        self.damping = self.initial_damping

        self._log(f"Starting sparse LM optimization with {problem.pose_num} cameras, "
                  f"{problem.point_num} points, {problem.projection_num} observations")
        self._log(f"  Linear solver: {problem.linear_solver_type.name}, threads: {problem.parallel.thread_num}, "
                  f"loss: {problem.loss_function!r}, strategy: {strategy!r}")

        if problem.projection_num == 0:
            self._finish(summary, SolverState.FAILED, "problem has no projections")
            self._log(f"Optimization failed: {summary.message}")
            problem.save_debug(summary.cost_history, summary.records)
            return summary

        problem.ensure_associations()

        # Evaluating
        self.state = SolverState.EVALUATING
        problem.clear_state()
        evaluate_jacobian(problem)
        cost = problem.loss_function.cost(np.sum(problem.residual ** 2, axis=1))
        summary.initial_cost = summary.final_cost = cost
        summary.cost_history.append(cost)
        if not np.isfinite(cost):
            self._finish(summary, SolverState.FAILED, "initial cost is not finite")
            self._log(f"Optimization failed: {summary.message}")
            problem.save_debug(summary.cost_history, summary.records)
            return summary

        self._log(f"Iteration 0: Cost = {cost:.6e}")

        iteration = 0
        consecutive_failures = 0
        consecutive_rejections = 0
        rebuild = True

        while True:
            if iteration >= self.max_iterations:
                self._finish(summary, SolverState.CONVERGED, "maximum number of iterations reached")
                break

            if rebuild:
                # Building
                self.state = SolverState.BUILDING
                normal_equations.evaluate_jc_jc(problem)
                strategy.evaluate_jp_jp(problem)
                normal_equations.evaluate_jc_jp(problem)
                normal_equations.evaluate_jce(problem)
                strategy.evaluate_jpe(problem)
                pose_diagonal = normal_equations.get_diagonal(problem.jc_jc)
                point_diagonal = normal_equations.get_diagonal(problem.jp_jp)
                rebuild = False

                gradient = self._gradient_max_norm()
                if gradient <= self.gradient_tolerance:
                    self._finish(summary, SolverState.CONVERGED,
                                 f"gradient tolerance reached ({gradient:.3e})")
                    break

            # Solving
            self.state = SolverState.SOLVING
            step_start = time.perf_counter()
            normal_equations.set_diagonal(problem.jc_jc, normal_equations.damp_diagonal(pose_diagonal, self.damping))
            normal_equations.set_diagonal(problem.jp_jp, normal_equations.damp_diagonal(point_diagonal, self.damping))

            solved = strategy.evaluate_delta_pose(problem, self.pose_indexes)
            if solved:
                strategy.evaluate_delta_point(problem)
                solved = bool(np.all(np.isfinite(problem.pose_update)) and np.all(np.isfinite(problem.point_update)))

            if not solved:
                consecutive_failures += 1
                self._log(f"  Warning: Linear solve failed with damping {self.damping:.3e}")
                summary.records.append(IterationRecord(iteration + 1, cost, self.damping, False, float('nan'),
                                                       time.perf_counter() - step_start))
                if consecutive_failures > self.max_consecutive_failures:
                    self._finish(summary, SolverState.FAILED,
                                 f"linear solver failed {consecutive_failures} consecutive times")
                    break
                self.damping *= self.damping_factor
                continue
            consecutive_failures = 0

            step_norm = float(np.sqrt(np.sum(problem.pose_update ** 2) + np.sum(problem.point_update ** 2)))
            parameter_norm = self._parameter_norm()
            if step_norm <= self.parameter_tolerance * (parameter_norm + self.parameter_tolerance):
                self._finish(summary, SolverState.CONVERGED, f"parameter tolerance reached ({step_norm:.3e})")
                break

            # Updating
            self.state = SolverState.UPDATING
            snapshot = problem.snapshot()
            accepted_residual = problem.residual.copy()
            problem.update_param()
            new_cost = evaluate_square_residual(problem)
            finite = bool(np.isfinite(new_cost)) and problem.parameters_finite()

            self._log(f"Iteration {iteration + 1}:")
            self._log(f"  Damping parameter: {self.damping:.6e}")
            self._log(f"  Current cost: {cost:.6e}")
            self._log(f"  New cost: {new_cost:.6e}")

            if finite and new_cost < cost:
                iteration += 1
                relative_decrease = (cost - new_cost) / cost if cost > 0 else 0.0
                cost = new_cost
                consecutive_rejections = 0
                self.damping = max(self.damping / self.damping_factor, self.min_damping)
                summary.cost_history.append(cost)
                summary.records.append(IterationRecord(iteration, cost, self.damping, True, step_norm,
                                                       time.perf_counter() - step_start))
                self._log(f"  Update accepted. Damping decreased to {self.damping:.6e}")

                if relative_decrease <= self.function_tolerance:
                    self._finish(summary, SolverState.CONVERGED,
                                 f"function tolerance reached ({relative_decrease:.3e})")
                    break

                self.state = SolverState.EVALUATING
                evaluate_jacobian(problem)
                rebuild = True
            else:
                problem.restore(snapshot)
                problem.residual[:] = accepted_residual
                consecutive_rejections += 1
                summary.records.append(IterationRecord(iteration + 1, new_cost, self.damping, False, step_norm,
                                                       time.perf_counter() - step_start))
                self.damping *= self.damping_factor
                self._log(f"  Update rejected. Damping increased to {self.damping:.6e}")

                if consecutive_rejections > self.max_consecutive_failures or self.damping > self.max_damping:
                    # converged only when the cost is stationary
                    relative_change = abs(new_cost - cost) / cost if finite and cost > 0 else float('inf')
                    if not finite:
                        self._finish(summary, SolverState.FAILED, "parameters diverged to non-finite values")
                    elif relative_change <= self.function_tolerance:
                        self._finish(summary, SolverState.CONVERGED,
                                     f"function tolerance reached ({relative_change:.3e})")
                    else:
                        self._finish(summary, SolverState.FAILED,
                                     f"cost not decreased after {consecutive_rejections} consecutive rejected steps")
                    break

        evaluate_residual(problem)
        summary.iterations = iteration
        summary.final_cost = cost
        summary.reprojection_error = compute_reprojection_error(problem.residual)
        summary.total_time = time.perf_counter() - start_time

        mean, median, maximum = summary.reprojection_error
        self._log(f"\nOptimization {summary.state.value}: {summary.message}")
        self._log(f"  Iterations: {summary.iterations}")
        self._log(f"  Initial cost: {summary.initial_cost:.6e}")
        self._log(f"  Final cost: {summary.final_cost:.6e}")
        self._log(f"  Reprojection error (mean / median / max): {mean:.4f} / {median:.4f} / {maximum:.4f} px")
        self._log(f"  Total time: {summary.total_time:.3f} s")
        self._log("  Iteration log:")
        for record in summary.records:
            self._log(f"    {record.iteration:4d}  cost {record.cost:.6e}  damping {record.damping:.3e}  "
                      f"{'accepted' if record.accepted else 'rejected'}  {record.elapsed:.4f} s")
        debug_folder = problem.save_debug(summary.cost_history, summary.records)
        if debug_folder is not None and self.verbose:
            print(f"Debug output saved to {debug_folder}")
        return summary

    def _gradient_max_norm(self) -> float:
        problem = self.problem
        if self.pose_indexes is None:
            pose_gradient = problem.jce
        else:
            pose_gradient = problem.jce[self.pose_indexes]
        norms = [np.max(np.abs(g)) for g in (pose_gradient, problem.jpe) if g.size]
        return float(max(norms)) if norms else 0.0

    def _parameter_norm(self) -> float:
        problem = self.problem
        return float(np.sqrt(np.sum(problem.pose_block.angle_axis ** 2)
                             + np.sum(problem.pose_block.translation ** 2)
                             + np.sum(problem.point_block.points ** 2)))
