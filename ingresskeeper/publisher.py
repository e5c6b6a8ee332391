"""Write routing configuration artifacts for the routing process."""

import json
import os
import tempfile
from pathlib import Path
from typing import Union

from .errors import PersistenceError
from .logging_config import get_logger, log_function_entry, log_function_exit
from .models import RoutingConfiguration

logger = get_logger(__name__)


class ConfigurationPublisher:
    """Publish a RoutingConfiguration as a JSON document at a fixed path.

    The document is written to a temporary file next to the target and
    renamed over it, so a concurrent reader sees either the previous or the
    new document in full.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def render(self, configuration: RoutingConfiguration) -> str:
        """Serialize a configuration to the artifact format."""
        return json.dumps(configuration.to_document(), indent=2) + "\n"

    def publish(self, configuration: RoutingConfiguration) -> None:
        """Replace the artifact with ``configuration``.

        Raises:
            PersistenceError: If the artifact could not be written. The
                previous artifact is left untouched.
        """
        log_function_entry(logger, "publish", path=str(self.path),
                           mappings=len(configuration.ip_mappings))
        content = self.render(configuration)
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = tmp.name
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("Failed to publish routing configuration", path=str(self.path), error=str(e))
            raise PersistenceError(str(self.path), str(e)) from e

        logger.info("Routing configuration published", path=str(self.path),
                    mappings=len(configuration.ip_mappings))
        log_function_exit(logger, "publish", status="success")

    def read(self) -> RoutingConfiguration:
        """Load the currently published configuration.

        Raises:
            PersistenceError: If the artifact is missing or malformed.
        """
        try:
            with open(self.path) as f:
                return RoutingConfiguration.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            raise PersistenceError(str(self.path), str(e)) from e
