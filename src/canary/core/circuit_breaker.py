"""Circuit breaker guarding the shared metrics backend."""
import pybreaker
from prometheus_client import Gauge
from loguru import logger

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state: 0=closed, 1=open, 2=half_open",
    ["service"],
)

def on_circuit_open(cb, exc):
    """Called when circuit opens."""
    logger.error(f"🔴 Circuit OPEN for {cb.name}: {exc}")
    CIRCUIT_STATE.labels(service=cb.name).set(1)

def on_circuit_close(cb):
    """Called when circuit closes."""
    logger.info(f"🟢 Circuit CLOSED for {cb.name}")
    CIRCUIT_STATE.labels(service=cb.name).set(0)

def on_circuit_half_open(cb):
    """Called when circuit enters half-open state."""
    logger.warning(f"🟡 Circuit HALF-OPEN for {cb.name}")
    CIRCUIT_STATE.labels(service=cb.name).set(2)


class _BreakerListener(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        name = new_state.name if new_state else None
        if name == "open":
            on_circuit_open(cb, getattr(cb, "last_failure", None))
        elif name == "closed":
            on_circuit_close(cb)
        elif name == "half-open":
            on_circuit_half_open(cb)


def create_breaker(name: str, fail_max: int = 5, reset_timeout: int = 60) -> pybreaker.CircuitBreaker:
    """Build a breaker that reports its state to Prometheus."""
    return pybreaker.CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        name=name,
        listeners=[_BreakerListener()],
    )


# Metrics backend circuit breaker
metrics_backend_breaker = create_breaker("metrics_backend")
