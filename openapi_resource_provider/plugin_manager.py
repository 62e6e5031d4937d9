import importlib.metadata
import logging
from typing import Dict, Optional, Type

from .telemetry import BaseTelemetrySink

# The entry point group telemetry sinks register under.
ENTRY_POINT_GROUP = "openapi_resource_provider.telemetry"

logger = logging.getLogger(__name__)


class PluginManager:
    """Discovers and registers telemetry sinks via entry points."""

    def __init__(self):
        self.plugins: Dict[str, Type[BaseTelemetrySink]] = {}
        self._load_plugins()

    def _load_plugins(self):
        entry_points = importlib.metadata.entry_points(group=ENTRY_POINT_GROUP)

        for entry_point in entry_points:
            try:
                sink_class = entry_point.load()
                if not (
                    isinstance(sink_class, type)
                    and issubclass(sink_class, BaseTelemetrySink)
                ):
                    raise TypeError(f"{sink_class!r} is not a telemetry sink")
                type_name = sink_class.get_type_name()
                self.plugins[type_name] = sink_class
                logger.info(
                    "Registered plugin '%s' for type: '%s'", entry_point.name, type_name
                )

            except Exception as e:
                logger.warning("Could not load plugin '%s': %s", entry_point.name, e)

    def get_plugin(self, type_name: str) -> Optional[Type[BaseTelemetrySink]]:
        """Returns the registered sink class for a telemetry type."""
        return self.plugins.get(type_name)
