"""
Plan executor.

One coordinating thread walks the plan and hands operations whose
prerequisites have all succeeded to a bounded thread pool. State is
written after every confirmed remote success and nowhere else.
"""
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from converge.engine.diff import resolve_attributes
from converge.engine.state import StateStore
from converge.errors import APIError, ConcurrentModificationError, PermanentAPIError, TransientAPIError
from converge.models.change import UNKNOWN, Action
from converge.models.plan import OpStatus, Operation, Plan, Step
from converge.models.resource import ResourceNode
from converge.models.state import StateRecord
from converge.providers.base import Provider

console = Console(stderr=True)

_BLOCKING = (OpStatus.FAILED, OpStatus.SKIPPED, OpStatus.CANCELLED)


@dataclass
class OperationResult:
    operation: Operation
    status: OpStatus = OpStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None
    remote_id: Optional[str] = None
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.key,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "remote_id": self.remote_id,
            "note": self.note,
        }


@dataclass
class ExecutionResult:
    results: Dict[str, OperationResult] = field(default_factory=dict)
    cancelled: bool = False

    def with_status(self, status: OpStatus) -> List[OperationResult]:
        return [r for r in self.results.values() if r.status == status]

    @property
    def ok(self) -> bool:
        return all(r.status == OpStatus.SUCCEEDED for r in self.results.values())

    def counts(self) -> Dict[str, int]:
        return {s.value: len(self.with_status(s)) for s in OpStatus}


class Executor:
    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        parallelism: int = 10,
        max_attempts: int = 5,
        backoff: float = 0.5,
        max_backoff: float = 30.0,
        lock_timeout: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        on_event: Optional[Callable[[OperationResult], None]] = None,
    ):
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.provider = provider
        self.store = store
        self.parallelism = parallelism
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.lock_timeout = lock_timeout
        self._sleep = sleep
        self._on_event = on_event
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop dispatching; in-flight operations are allowed to finish."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, plan: Plan) -> ExecutionResult:
        operation = "destroy" if plan.destroy else "apply"
        self._cancel.clear()
        with self.store.lock(operation, timeout=self.lock_timeout):
            self._check_current(plan)
            try:
                return self._run(plan)
            finally:
                # a rerun of this plan resumes from its own writes
                plan.serial = self.store.serial
                plan.lineage = self.store.lineage

    def _check_current(self, plan: Plan) -> None:
        if plan.serial is None:
            return
        self.store.records()   # loads serial and lineage written by the last holder
        if plan.lineage != self.store.lineage or plan.serial != self.store.serial:
            raise ConcurrentModificationError(
                f"plan is stale: state changed since it was made "
                f"(serial {plan.serial}, now {self.store.serial}); plan again"
            )

    # ------------------------------------------------------------ coordination
    def _emit(self, result: OperationResult) -> None:
        if self._on_event is not None:
            self._on_event(result)

    def _run(self, plan: Plan) -> ExecutionResult:
        outcome = ExecutionResult(results={op.key: OperationResult(op) for op in plan.operations})
        results = outcome.results
        in_flight: Dict[Future, str] = {}
        fatal: Optional[BaseException] = None

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="converge") as pool:
            while True:
                # plan order is topological, so one pass settles every skip
                for op in plan.operations:
                    result = results[op.key]
                    if result.status != OpStatus.PENDING:
                        continue
                    if self._cancel.is_set():
                        result.status = OpStatus.CANCELLED
                        self._emit(result)
                        continue
                    prereqs = [results[k] for k in plan.dependencies.get(op.key, ())]
                    if any(p.status in _BLOCKING for p in prereqs):
                        result.status = OpStatus.SKIPPED
                        blocked = [p.operation.key for p in prereqs if p.status in _BLOCKING]
                        result.note = f"prerequisite did not succeed: {', '.join(blocked)}"
                        self._emit(result)
                        continue
                    if len(in_flight) >= self.parallelism:
                        continue
                    if all(p.status == OpStatus.SUCCEEDED for p in prereqs):
                        result.status = OpStatus.IN_PROGRESS
                        self._emit(result)
                        in_flight[pool.submit(self._execute, plan, result)] = op.key

                if not in_flight:
                    break
                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    console.print("[yellow]Interrupt received:[/yellow] waiting for in-flight operations")
                    self.cancel()
                    continue

                for future in done:
                    result = results[in_flight.pop(future)]
                    try:
                        future.result()
                    except APIError as exc:
                        result.status = OpStatus.FAILED
                        result.error = str(exc)
                    except Exception as exc:
                        result.status = OpStatus.FAILED
                        result.error = str(exc)
                        if fatal is None:
                            fatal = exc
                        self.cancel()
                    else:
                        result.status = OpStatus.SUCCEEDED
                    self._emit(result)

        outcome.cancelled = self._cancel.is_set()
        if fatal is not None:
            raise fatal
        return outcome

    # ------------------------------------------------------------ single operation
    def _before_sleep(self, result: OperationResult) -> Callable[[RetryCallState], None]:
        def log(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            wait_s = state.next_action.sleep if state.next_action else 0
            console.print(
                f"[yellow]Retrying[/yellow] {result.operation} in {wait_s:.1f}s "
                f"(attempt {state.attempt_number}/{self.max_attempts}): {exc}"
            )
        return log

    def _call(self, result: OperationResult, fn: Callable[..., Any], *args: Any) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.max_backoff),
            retry=retry_if_exception_type(TransientAPIError),
            reraise=True,
            sleep=self._sleep,
            before_sleep=self._before_sleep(result),
        )

        def attempt() -> Any:
            result.attempts += 1
            return fn(*args)

        return retrying(attempt)

    def _resolve(self, node: ResourceNode, prior: Optional[StateRecord]) -> Dict[str, Any]:
        def lookup(address: str, attribute: str) -> Any:
            record = self.store.get(address)
            if record is None or not record.has(attribute):
                return UNKNOWN
            return record.value(attribute)

        attributes = resolve_attributes(node, lookup)
        if prior is not None:
            for key in list(attributes):
                if node.lifecycle.ignores(key) and key in prior.attributes:
                    attributes[key] = prior.attributes[key]
        unresolved = sorted(k for k, v in attributes.items() if v is UNKNOWN)
        if unresolved:
            raise PermanentAPIError(
                f"{node.address}: values for {', '.join(unresolved)} are not available",
                code="Unresolved",
            )
        return attributes

    def _already_applied(self, plan: Plan, op: Operation, record: Optional[StateRecord]) -> bool:
        """True when an earlier run of this plan already completed ``op``."""
        if record is None:
            return op.step == Step.DESTROY
        baseline = plan.recorded.get(op.address)
        if record == baseline:
            # nothing has been written for this resource since planning
            return False
        if op.step == Step.CREATE and baseline is not None and record.remote_id == baseline.remote_id:
            return False
        node = plan.nodes.get(op.address)
        if op.step == Step.DESTROY:
            if op.deposed:
                return not record.deposed_id
            if op.action == Action.DESTROY:
                return not record.remote_id
        if node is None or not record.remote_id:
            return False
        try:
            desired = self._resolve(node, record)
        except PermanentAPIError:
            return False
        return record.attributes == desired

    def _execute(self, plan: Plan, result: OperationResult) -> None:
        op = result.operation
        node = plan.nodes.get(op.address)
        prior = self.store.get(op.address)

        if self._already_applied(plan, op, prior):
            result.note = "already applied"
            result.remote_id = prior.remote_id if prior else None
            return

        if op.step == Step.DESTROY:
            self._destroy(op, prior, result)
            return
        if node is None:
            raise PermanentAPIError(f"{op.address} is not in the configuration", code="Invalid")

        attributes = self._resolve(node, prior)
        if op.step == Step.CREATE:
            obj = self._call(result, self.provider.create, op.resource_type, attributes)
            deposed_id = None
            if op.action == Action.REPLACE and prior is not None and prior.remote_id:
                # create-before-destroy: keep the old object until its destroy step
                deposed_id = prior.remote_id
        else:
            if prior is None or not prior.remote_id:
                raise PermanentAPIError(f"{op.address} has no remote object to update", code="NotFound")
            obj = self._call(result, self.provider.update, op.resource_type, prior.remote_id, attributes)
            deposed_id = prior.deposed_id

        result.remote_id = obj.remote_id
        self.store.put(op.address, StateRecord(
            resource_type=op.resource_type,
            remote_id=obj.remote_id,
            attributes=attributes,
            outputs=dict(obj.outputs),
            dependencies=sorted(node.dependencies),
            lifecycle=node.lifecycle,
            deposed_id=deposed_id,
        ))

    def _destroy(self, op: Operation, prior: StateRecord, result: OperationResult) -> None:
        if op.deposed:
            self._call(result, self.provider.delete, op.resource_type, prior.deposed_id)
            result.remote_id = prior.deposed_id
            if prior.remote_id:
                self.store.put(op.address, replace(prior, deposed_id=None))
            else:
                self.store.remove(op.address)
            return

        if prior.remote_id:
            self._call(result, self.provider.delete, op.resource_type, prior.remote_id)
            result.remote_id = prior.remote_id
        if prior.deposed_id:
            self.store.put(op.address, replace(prior, remote_id="", attributes={}, outputs={}))
        else:
            self.store.remove(op.address)
