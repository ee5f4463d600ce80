"""Declarative rollout and analysis template schemas.

Templates arrive as YAML/JSON configuration and are validated here before a
rollout is created. Provider specs are a closed set of variants tagged by
``kind``; steps are tagged by ``type`` and also accept the short forms
``{"setWeight": 10}``, ``{"pause": {"duration": 30}}`` and
``{"analysis": {"templateName": "success-rate"}}``.
"""
import operator
import re
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Type, TypeVar, Union
from urllib.parse import parse_qsl, urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.canary.core.config import settings
from src.canary.core.errors import ConfigError

ModelT = TypeVar("ModelT", bound=BaseModel)

# Names that must never carry a literal value in a provider spec
SENSITIVE_NAME = re.compile(
    r"(authorization|token|passw(or)?d|secret|api[-_]?key|cookie|credential)",
    re.IGNORECASE,
)
# Templating markers that expect some other layer to substitute secret material
SECRET_MARKERS = ("${", "{{", "secretKeyRef", "valueFrom")
# Format-string fields use "{{" for a literal brace
FORMAT_SECRET_MARKERS = tuple(m for m in SECRET_MARKERS if m != "{{")

BINDING_NAME = r"^[A-Za-z_][A-Za-z0-9_]*$"

_CONDITION_RE = re.compile(
    r"^(?:result\s*)?(?P<op>>=|<=|==|!=|>|<)\s*(?P<value>-?\d+(?:\.\d+)?)$"
)

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def _reject_literal_secrets(values: Dict[str, str], what: str) -> Dict[str, str]:
    for name, value in values.items():
        if SENSITIVE_NAME.search(name):
            raise ValueError(
                f"{what} '{name}' looks like a credential; bind it through 'credentials' instead"
            )
        if any(marker in value for marker in SECRET_MARKERS):
            raise ValueError(
                f"{what} '{name}' uses secret templating; bind it through 'credentials' instead"
            )
    return values


def _reject_secrets_in_url(url: Optional[str], what: str) -> Optional[str]:
    if url is None:
        return url
    if any(marker in url for marker in FORMAT_SECRET_MARKERS):
        raise ValueError(f"{what} uses secret templating; bind it through 'credentials' instead")
    parts = urlsplit(url)
    if "@" in parts.netloc:
        raise ValueError(f"{what} carries user info; bind it through 'credentials' instead")
    for name, _ in parse_qsl(parts.query, keep_blank_values=True):
        if SENSITIVE_NAME.search(name):
            raise ValueError(
                f"{what} parameter '{name}' looks like a credential; bind it through 'credentials' instead"
            )
    return url


class SecretRef(BaseModel):
    """Opaque handle to secret material held by the hosting environment."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=r"^[A-Za-z0-9_.-]+$")
    key: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_.-]+$")

    def __str__(self) -> str:
        return f"{self.name}/{self.key}" if self.key else self.name


class Condition(BaseModel):
    """Threshold comparison applied to a scalar measurement.

    Accepts either ``{"operator": ">=", "threshold": 95}`` or the string
    forms ``">= 95"`` and ``"result >= 95"``.
    """
    model_config = ConfigDict(frozen=True)

    operator: Literal[">", ">=", "<", "<=", "==", "!="]
    threshold: float

    @model_validator(mode="before")
    @classmethod
    def _parse_expression(cls, data: Any) -> Any:
        if isinstance(data, str):
            match = _CONDITION_RE.match(data.strip())
            if not match:
                raise ValueError(f"Invalid condition expression: {data!r}")
            return {"operator": match.group("op"), "threshold": float(match.group("value"))}
        return data

    def evaluate(self, value: float) -> bool:
        return _OPERATORS[self.operator](value, self.threshold)

    def __str__(self) -> str:
        return f"result {self.operator} {self.threshold:g}"


# ---------------------------------------------------------------------------
# Provider variants
# ---------------------------------------------------------------------------

class QueryProviderSpec(BaseModel):
    """PromQL query against the metrics backend.

    ``query`` is a format string filled from the analysis args, so literal
    PromQL braces are written doubled: ``rate(x{{app="{app}"}}[5m])``.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["query"] = "query"
    query: str = Field(..., min_length=1)
    address: Optional[str] = None  # defaults to settings.PROMETHEUS_URL
    auth: Optional[str] = None  # credential binding sent as a bearer token

    @field_validator("query")
    @classmethod
    def _query_carries_no_secrets(cls, query: str) -> str:
        if any(marker in query for marker in FORMAT_SECRET_MARKERS):
            raise ValueError("Query uses secret templating; bind it through 'credentials' instead")
        return query

    @field_validator("address")
    @classmethod
    def _address_carries_no_secrets(cls, address: Optional[str]) -> Optional[str]:
        return _reject_secrets_in_url(address, "Address")


class ProbeProviderSpec(BaseModel):
    """Synthetic HTTP request checked for status and latency."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["probe"] = "probe"
    url: str = Field(..., min_length=1)
    method: Literal["GET", "HEAD", "POST"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    expected_status: List[int] = Field(default_factory=lambda: [200], min_length=1)
    max_latency_ms: Optional[float] = Field(default=None, gt=0)
    auth: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _url_carries_no_secrets(cls, url: str) -> str:
        return _reject_secrets_in_url(url, "URL")

    @field_validator("headers")
    @classmethod
    def _headers_carry_no_secrets(cls, headers: Dict[str, str]) -> Dict[str, str]:
        return _reject_literal_secrets(headers, "Header")


class JobProviderSpec(BaseModel):
    """Check command run in an isolated subprocess; the exit code is the verdict."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["job"] = "job"
    command: List[str] = Field(..., min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None

    @field_validator("env")
    @classmethod
    def _env_carries_no_secrets(cls, env: Dict[str, str]) -> Dict[str, str]:
        return _reject_literal_secrets(env, "Environment variable")


ProviderSpec = Annotated[
    Union[QueryProviderSpec, ProbeProviderSpec, JobProviderSpec],
    Field(discriminator="kind"),
]


class MetricSpec(BaseModel):
    """One metric of an analysis template."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=r"^[A-Za-z0-9_.-]+$")
    provider: ProviderSpec
    success_condition: Optional[Condition] = None
    failure_condition: Optional[Condition] = None
    interval: float = Field(default_factory=lambda: settings.DEFAULT_METRIC_INTERVAL, gt=0)
    count: int = Field(default_factory=lambda: settings.DEFAULT_METRIC_COUNT, ge=1)
    failure_limit: int = Field(default=1, ge=1)  # consecutive failures that fail the metric
    success_limit: int = Field(default=1, ge=1)  # consecutive passes that pass the metric
    error_limit: Optional[int] = Field(default=None, ge=1)  # count errors apart from failures
    timeout: float = Field(default_factory=lambda: settings.DEFAULT_METRIC_TIMEOUT, gt=0)
    credentials: Dict[str, SecretRef] = Field(default_factory=dict)

    @field_validator("credentials")
    @classmethod
    def _binding_names(cls, credentials: Dict[str, SecretRef]) -> Dict[str, SecretRef]:
        for binding in credentials:
            if not re.match(BINDING_NAME, binding):
                raise ValueError(f"Invalid credential binding name: {binding!r}")
        return credentials

    @model_validator(mode="after")
    def _check_consistency(self) -> "MetricSpec":
        if self.provider.kind == "query" and self.success_condition is None:
            raise ValueError(f"Metric '{self.name}': query provider requires success_condition")
        auth = getattr(self.provider, "auth", None)
        if auth is not None and auth not in self.credentials:
            raise ValueError(f"Metric '{self.name}': auth binding '{auth}' is not declared in credentials")
        if self.success_limit > self.count:
            raise ValueError(f"Metric '{self.name}': success_limit cannot exceed count")
        return self

    @property
    def max_duration(self) -> float:
        """Upper bound on the wall time of this metric's polling loop."""
        return self.count * (self.interval + self.timeout)


class AnalysisTemplate(BaseModel):
    """Named set of metrics evaluated at an Analysis step."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=r"^[A-Za-z0-9_.-]+$")
    metrics: List[MetricSpec] = Field(..., min_length=1)
    args: Dict[str, str] = Field(default_factory=dict)

    @field_validator("metrics")
    @classmethod
    def _unique_metric_names(cls, metrics: List[MetricSpec]) -> List[MetricSpec]:
        names = [m.name for m in metrics]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate metric names: {', '.join(duplicates)}")
        return metrics


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

class SetWeightStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["setWeight"] = "setWeight"
    weight: int = Field(..., ge=0, le=100)


class PauseStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["pause"] = "pause"
    duration: Optional[float] = Field(default=None, ge=0)  # None pauses until promoted

    @property
    def indefinite(self) -> bool:
        return self.duration is None


class AnalysisStep(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["analysis"] = "analysis"
    template: str
    args: Dict[str, str] = Field(default_factory=dict)


Step = Annotated[
    Union[SetWeightStep, PauseStep, AnalysisStep],
    Field(discriminator="type"),
]


def _expand_step_shorthand(step: Any) -> Any:
    if not isinstance(step, dict) or "type" in step or len(step) != 1:
        return step
    (key, value), = step.items()
    if key == "setWeight":
        return {"type": "setWeight", "weight": value}
    if key == "pause":
        return {"type": "pause", **(value or {})}
    if key == "analysis" and isinstance(value, dict):
        template = value.get("templateName", value.get("template"))
        return {"type": "analysis", "template": template, "args": value.get("args", {})}
    return step


class RevisionSubmitted(BaseModel):
    """Event handed over by an upstream pipeline when a new revision is ready."""
    model_config = ConfigDict(extra="forbid")

    application: str = Field(..., pattern=r"^[A-Za-z0-9_.-]+$")
    revision: str = Field(..., min_length=1)
    steps: List[Step] = Field(default_factory=list)
    args: Dict[str, str] = Field(default_factory=dict)
    source: Optional[str] = None  # upstream pipeline that produced the revision
    rollout_id: Optional[str] = None

    @field_validator("steps", mode="before")
    @classmethod
    def _expand_steps(cls, steps: Any) -> Any:
        if isinstance(steps, list):
            return [_expand_step_shorthand(step) for step in steps]
        return steps


class ControlSignalResponse(BaseModel):
    rollout_id: str
    signal: str
    status: str


def parse_model(model_cls: Type[ModelT], data: Any) -> ModelT:
    """Validate ``data`` into ``model_cls``, raising ConfigError on failure."""
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid {model_cls.__name__}: {e.error_count()} validation error(s)",
            context={"errors": [
                {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                for err in e.errors()
            ]},
        ) from e
