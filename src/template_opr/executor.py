"""Plan executor: dispatches planned operations to a provider.

Operations run one at a time in plan order. Before each call the
operation's deferred slots are filled from the runtime attribute table;
after it, the provider's runtime attributes are recorded for later
operations. A failure halts the remaining plan without undoing completed
operations, and the partial state is returned to the caller.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from common import ProviderError, TemplateError
from providers.base import Provider, check_attributes
from template_opr.planner import ExecutionPlan, PlannedOperation
from template_opr.state import ExecutionState

logger = logging.getLogger(__name__)


@dataclass
class PlanExecutor:
    """Executes an ExecutionPlan against a provider.

    Attributes:
        plan: The validated plan to execute
        provider: Provider that materializes each resource
        dry_run: If True, preview operations without calling the provider
        state_dir: Where execution state is saved (None = do not persist)
    """
    plan: ExecutionPlan
    provider: Provider
    dry_run: bool = False
    state_dir: Optional[Path] = None
    _cancelled: bool = field(default=False, init=False, repr=False)

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next operation."""
        logger.warning("Cancellation requested, remaining operations will not run")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def apply(self) -> tuple[bool, ExecutionState]:
        """Execute the plan.

        Returns:
            (success, state) where state lists which resources were
            materialized, failed, skipped or cancelled, and the outputs on
            success
        """
        state = ExecutionState(self.plan.template.name, self.state_dir,
                               secrets=self.plan.evaluator.secure_values)
        state.start()

        for op in self.plan.operations:
            state.add_resource(op.symbol, name=op.name, type=f'{op.type}@{op.api_version}')

        if self.dry_run:
            self._preview()
            state.skip_remaining('dry-run')
            state.finish()
            return True, state

        success = True
        try:
            for op in self.plan.operations:
                if self._cancelled:
                    state.error = 'cancelled'
                    cancelled = state.cancel_remaining()
                    logger.warning(f"Cancelled before {op.symbol}; not run: {', '.join(cancelled)}")
                    success = False
                    break

                rs = state.get_resource(op.symbol)
                rs.start()
                try:
                    self._materialize(op, state)
                except TemplateError as e:
                    rs.fail(str(e))
                    state.error = f"{op.symbol}: {e}"
                    skipped = state.skip_remaining(f"halted after {op.symbol} failed")
                    logger.error(f"Operation {op.step} ({op.symbol}) failed: {e}")
                    if skipped:
                        logger.error(f"Not run: {', '.join(skipped)}")
                    success = False
                    break

                rs.complete()
                logger.info(f"[{op.step}/{len(self.plan.operations)}] {op.symbol} "
                            f"materialized ({rs.duration or 0:.1f}s)")
                self._save(state)
        except KeyboardInterrupt:
            state.error = 'cancelled'
            cancelled = state.cancel_remaining()
            logger.warning(f"Interrupted; cancelled: {', '.join(cancelled)}")
            success = False

        if success:
            try:
                state.outputs = self.plan.evaluator.evaluate_outputs(state.runtime)
            except TemplateError as e:
                state.error = f"outputs: {e}"
                logger.error(f"Output evaluation failed: {e}")
                success = False

        state.finish()
        self._save(state)
        if not success and state.materialized:
            logger.warning(f"Left in place: {', '.join(state.materialized)}")
        return success, state

    def _materialize(self, op: PlannedOperation, state: ExecutionState) -> None:
        evaluator = self.plan.evaluator
        payload = evaluator.substitute(op.inputs, state.runtime, f'resources.{op.symbol}')
        logger.debug(f"Materializing {op.type}@{op.api_version} '{op.name}'")
        start = time.time()
        try:
            result = self.provider.materialize(op.type, op.api_version, payload)
        except TemplateError:
            raise
        except Exception as e:
            # Any provider exception halts the plan as a ProviderError
            raise ProviderError(f"{op.type} '{op.name}': {type(e).__name__}: {e}",
                                resource=op.name) from e
        attributes = check_attributes(result, op.type, op.name)
        state.runtime.record(op.symbol, attributes)
        logger.debug(f"Provider returned {len(attributes)} attribute(s) for {op.symbol} "
                     f"in {time.time() - start:.2f}s")

    def _save(self, state: ExecutionState) -> None:
        if self.state_dir is not None:
            state.save()

    def _preview(self) -> None:
        """Print the operations that would run."""
        print(f"\nDRY-RUN APPLY: {self.plan.template.name} via {self.provider.name} provider")
        print(self.plan.preview())
