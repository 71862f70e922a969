"""
Traffic Router - drive the computed canary split into every routing backend.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from trafficshift.canary.rollout import RolloutSnapshot
from trafficshift.canary.weight_calculator import WeightCalculation, compute_weights
from trafficshift.canary.weights import TrafficWeights
from trafficshift.config import ControllerConfig
from trafficshift.experiments.experiment import Experiment, weight_destinations_from_experiment
from trafficshift.logging_.structured import StructuredLogger, with_rollout
from trafficshift.servicemesh.dispatcher import DispatchContext, select_backends
from trafficshift.servicemesh.reconciler import TrafficRoutingError, TrafficRoutingReconciler

tracer = trace.get_tracer(__name__)


@dataclass
class TrafficRoutingResult:
    """
    Outcome of one routing pass.

    ``weights`` is None when the rollout has no routing backend; otherwise it
    is the split to persist on the rollout status.
    """
    weights: Optional[TrafficWeights] = None
    desired_weight: int = 0
    verified: Optional[bool] = None
    requeue_after: Optional[float] = None
    backends: list[str] = field(default_factory=list)


def should_verify_weight(snapshot: RolloutSnapshot) -> bool:
    """Weights are only verified on a setWeight step of an update in progress."""
    if not snapshot.status.stable_rs or snapshot.is_fully_promoted:
        return False
    step, _ = snapshot.current_step()
    return step is not None and step.set_weight is not None


BackendSelector = Callable[[RolloutSnapshot, DispatchContext], list[TrafficRoutingReconciler]]


class TrafficRouter:
    """
    Routes traffic between canary and stable for one reconciliation.

    Backends are called one after another in dispatch order. Any failure
    to apply routing aborts the pass; a failure to verify is only logged.
    """

    def __init__(
        self,
        context: DispatchContext,
        config: ControllerConfig | None = None,
        logger: StructuredLogger | None = None,
        selector: BackendSelector = select_backends,
    ):
        self.context = context
        self.config = config or ControllerConfig()
        self.logger = logger or StructuredLogger(__name__)
        self.selector = selector

    def reconcile(
        self,
        snapshot: RolloutSnapshot,
        experiment: Optional[Experiment] = None,
    ) -> TrafficRoutingResult:
        """Compute the split and apply it to every configured backend."""
        log = with_rollout(self.logger, snapshot)
        backends = self.selector(snapshot, self.context)
        if not backends:
            return TrafficRoutingResult()

        canary_hash = snapshot.new_rs.pod_template_hash if snapshot.new_rs else ""
        stable_hash = snapshot.stable_rs.pod_template_hash if snapshot.stable_rs else ""
        destinations = weight_destinations_from_experiment(experiment, snapshot.current_experiment_step())
        calc = compute_weights(snapshot, canary_hash, stable_hash, destinations)
        log.info(
            "Computed traffic weights",
            desired_weight=calc.desired_weight,
            canary_hash=calc.canary_hash,
            stable_hash=calc.stable_hash,
            interrupted=calc.interrupted,
        )

        check_weights = should_verify_weight(snapshot)
        verified: Optional[bool] = True if check_weights else None
        requeue_after = None
        for backend in backends:
            backend_log = log.bind(backend=backend.type())
            self._apply(snapshot, backend, calc, backend_log)
            if not check_weights:
                continue

            backend_verified = self._verify(backend, calc, backend_log)
            if backend_verified is False:
                requeue_after = self.config.verify_retry_interval
                verified = False
            elif backend_verified is None and verified:
                verified = None

        return TrafficRoutingResult(
            weights=calc.weights.with_verified(verified),
            desired_weight=calc.desired_weight,
            verified=verified,
            requeue_after=requeue_after,
            backends=[b.type() for b in backends],
        )

    def _call(self, backend: TrafficRoutingReconciler, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        with tracer.start_as_current_span(
            f"traffic_routing.{operation}",
            attributes={"backend": backend.type()},
        ) as span:
            try:
                return func(*args)
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                if isinstance(e, TrafficRoutingError) and e.backend is None:
                    e.backend = backend.type()
                raise

    def _apply(
        self,
        snapshot: RolloutSnapshot,
        backend: TrafficRoutingReconciler,
        calc: WeightCalculation,
        log: StructuredLogger,
    ) -> None:
        try:
            self._call(backend, "update_hash", backend.update_hash, calc.canary_hash, calc.stable_hash, calc.additional)
            self._call(backend, "set_weight", backend.set_weight, calc.desired_weight, calc.additional)
            self._reconcile_routes(snapshot, backend, calc, log)
        except TrafficRoutingError as e:
            log.error("Traffic routing failed", error=str(e))
            raise

    def _reconcile_routes(
        self,
        snapshot: RolloutSnapshot,
        backend: TrafficRoutingReconciler,
        calc: WeightCalculation,
        log: StructuredLogger,
    ) -> None:
        step, index = snapshot.current_step()
        settled = snapshot.is_fully_promoted or snapshot.is_aborted or calc.interrupted

        if step is not None and step.sets_route and snapshot.revision > 1 and not settled:
            if step.set_header_route is not None:
                log.info("Setting header route", route=step.set_header_route.name)
                self._call(backend, "set_header_route", backend.set_header_route, step.set_header_route)
            if step.set_mirror_route is not None:
                log.info("Setting mirror route", route=step.set_mirror_route.name)
                self._call(backend, "set_mirror_route", backend.set_mirror_route, step.set_mirror_route)
            return

        if not snapshot.managed_routes:
            return
        route_declared = index is not None and any(s.sets_route for s in snapshot.steps[: index + 1])
        if settled or not route_declared:
            log.debug("Removing managed routes")
            self._call(backend, "remove_managed_routes", backend.remove_managed_routes)

    def _verify(
        self,
        backend: TrafficRoutingReconciler,
        calc: WeightCalculation,
        log: StructuredLogger,
    ) -> Optional[bool]:
        """Return the backend's verdict, True when not applicable, None when it errored."""
        try:
            verified = self._call(backend, "verify_weight", backend.verify_weight, calc.desired_weight, calc.additional)
        except TrafficRoutingError as e:
            log.error("Weight verification failed", error=str(e))
            return None

        if verified is None:
            return True
        if not verified:
            log.info("Weight not yet verified", desired_weight=calc.desired_weight)
        return verified
