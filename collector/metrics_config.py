"""
Metric configuration

The metric configuration file lists, in order, the OPC UA nodes to read and
how each is exposed:

    metrics:
      - name: boiler_temperature
        help: Boiler temperature in celsius
        nodeid: ns=2;s=Boiler.Temperature
        type: gauge
        labels:
          site: plant-a

name, help, nodeid and type are required; labels are optional.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from logger import get_logger
from opcua_client.exceptions import InvalidConfigError

logger = get_logger(__name__)

REQUIRED_FIELDS = ("name", "help", "nodeid", "type")


class ValueKind(Enum):
    """How a metric's value is exposed"""
    COUNTER = "counter"
    GAUGE = "gauge"
    UNTYPED = "untyped"

    @classmethod
    def from_type(cls, metric_type: str) -> "ValueKind":
        """Map a configured type; unknown types are exposed untyped"""
        if metric_type == "counter":
            return cls.COUNTER
        if metric_type in ("gauge", "Float", "Double"):
            return cls.GAUGE
        return cls.UNTYPED


@dataclass(frozen=True)
class MetricDefinition:
    """One configured metric"""
    name: str
    help: str
    nodeid: str
    type: str
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def kind(self) -> ValueKind:
        return ValueKind.from_type(self.type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "help": self.help,
            "nodeid": self.nodeid,
        }
        if self.labels:
            data["labels"] = dict(self.labels)
        data["type"] = self.type
        return data


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass
class MetricsConfig:
    """Ordered list of metric definitions"""
    metrics: List[MetricDefinition] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.metrics)

    def validate(self):
        """
        Check the configuration is usable.

        Raises:
            InvalidConfigError: empty list or an entry missing a required field
        """
        if not self.metrics:
            raise InvalidConfigError("missing field 'metrics' in top configuration")
        for index, metric in enumerate(self.metrics):
            for field_name in REQUIRED_FIELDS:
                if not getattr(metric, field_name):
                    raise InvalidConfigError(
                        f"missing field '{field_name}' in 'metrics' configuration of metric {index}"
                    )

    @classmethod
    def from_dict(cls, data: Any) -> "MetricsConfig":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidConfigError("metrics configuration must be a mapping with a 'metrics' list")

        entries = data.get("metrics") or []
        if not isinstance(entries, list):
            raise InvalidConfigError("field 'metrics' must be a list")

        metrics = []
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise InvalidConfigError(f"metric {index} must be a mapping")
            labels = entry.get("labels") or {}
            if not isinstance(labels, dict):
                raise InvalidConfigError(f"field 'labels' of metric {index} must be a mapping")
            metrics.append(MetricDefinition(
                name=_text(entry.get("name")),
                help=_text(entry.get("help")),
                nodeid=_text(entry.get("nodeid")),
                type=_text(entry.get("type")),
                labels={str(k): _text(v) for k, v in labels.items()},
            ))
        return cls(metrics=metrics)

    def to_dict(self) -> Dict[str, Any]:
        return {"metrics": [m.to_dict() for m in self.metrics]}

    def serialize(self) -> bytes:
        """Dump as YAML, field order as documented"""
        return yaml.safe_dump(
            self.to_dict(),
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True
        ).encode("utf-8")


def parse_metrics_config(content: Union[bytes, str]) -> MetricsConfig:
    """
    Parse and validate YAML metric configuration.

    Raises:
        InvalidConfigError: unparsable YAML or failed validation
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise InvalidConfigError("cannot parse metrics configuration", original_error=e) from e

    config = MetricsConfig.from_dict(data)
    config.validate()
    return config


def load_metrics_config(path: Union[str, Path]) -> MetricsConfig:
    """
    Read, parse and validate the metric configuration file.

    Raises:
        InvalidConfigError: unreadable file, unparsable YAML or failed validation
    """
    path = Path(path)
    try:
        content = path.read_bytes()
    except OSError as e:
        raise InvalidConfigError(f"cannot read metrics configuration {path}", original_error=e) from e
    return parse_metrics_config(content)


def load_startup_metrics_config(path: Union[str, Path]) -> MetricsConfig:
    """
    Load the metric configuration at startup.

    A missing file is not an error at startup: the exporter starts with no
    configured metrics and exposes only its own instrumentation until a
    configuration is pushed or written and reloaded.
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Metrics configuration {path} not found, starting with no metrics")
        return MetricsConfig()
    return load_metrics_config(path)


def write_metrics_config(path: Union[str, Path], content: bytes):
    """Persist raw configuration bytes"""
    path = Path(path)
    try:
        path.write_bytes(content)
    except OSError as e:
        raise InvalidConfigError(f"cannot write metrics configuration {path}", original_error=e) from e
    logger.info(f"{path} rewritten ({len(content)} bytes)")
