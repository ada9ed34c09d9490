"""Topic to destination table resolution."""

from gpsink.contracts.data import DestinationKey
from gpsink.contracts.errors import RoutingError
from gpsink.core.config import TOPIC_PLACEHOLDER


class RecordRouter:
    """Derives a DestinationKey from a record's topic.

    The table name is table_name_format with ${topic} substituted. A name of
    the form "schema.table" overrides default_schema.

    Example:
        router = RecordRouter("cdc_${topic}", default_schema="staging")
        router.destination("orders")  # DestinationKey("staging", "cdc_orders")
    """

    def __init__(
        self,
        table_name_format: str = TOPIC_PLACEHOLDER,
        default_schema: str | None = None,
    ) -> None:
        self._format = table_name_format
        self._default_schema = default_schema
        self._cache: dict[str, DestinationKey] = {}

    def destination(self, topic: str) -> DestinationKey:
        """Resolve (and cache) the destination for a topic.

        Raises:
            RoutingError: If the formatted name is empty or malformed
        """
        cached = self._cache.get(topic)
        if cached is not None:
            return cached

        name = self._format.replace(TOPIC_PLACEHOLDER, topic).strip()
        if not name:
            raise RoutingError(
                topic,
                f"destination table name is empty using the format string '{self._format}'",
            )

        parts = name.split(".")
        if len(parts) > 2 or any(not part.strip() for part in parts):
            raise RoutingError(topic, f"'{name}' is not a valid [schema.]table identifier")

        if len(parts) == 2:
            key = DestinationKey(schema=parts[0].strip(), table=parts[1].strip())
        else:
            key = DestinationKey(schema=self._default_schema, table=parts[0].strip())

        self._cache[topic] = key
        return key
