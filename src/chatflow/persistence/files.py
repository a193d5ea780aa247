"""Flow repository backed by a directory of YAML/JSON flow files."""

import asyncio
import logging
from pathlib import Path

from cachetools import TTLCache

from chatflow.core.errors import ConfigError, FlowNotFoundError
from chatflow.flow.graph import ensure_valid
from chatflow.flow.loader import FLOW_SUFFIXES, FlowLoader
from chatflow.flow.models import FlowDefinition
from chatflow.persistence.base import FlowRepository

logger = logging.getLogger(__name__)


class FileFlowRepository(FlowRepository):
    """Reads flows from files; several files may hold versions of the same flow.

    Loaded definitions are validated and cached for ``cache_ttl`` seconds, so
    edits to the directory become visible without a restart.
    """

    def __init__(
        self,
        directory: str | Path,
        cache_size: int = 64,
        cache_ttl: float = 300.0,
    ) -> None:
        self.directory = Path(directory)
        self._cache: TTLCache[tuple[str, int | None], FlowDefinition] = TTLCache(
            maxsize=cache_size,
            ttl=cache_ttl,
        )

    async def load(self, flow_id: str, version: int | None = None) -> FlowDefinition:
        key = (flow_id, version)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        definition = await asyncio.to_thread(self._read, flow_id, version)
        self._cache[key] = definition
        return definition

    def _read(self, flow_id: str, version: int | None) -> FlowDefinition:
        if not self.directory.is_dir():
            raise FlowNotFoundError(f"Flow directory not found: {self.directory}")

        candidates: list[FlowDefinition] = []
        for path in sorted(self.directory.iterdir()):
            if path.suffix not in FLOW_SUFFIXES:
                continue
            try:
                definition = FlowLoader.load(path)
            except ConfigError as e:
                logger.warning(
                    f"Skipping unreadable flow file {path.name}: {e}", extra={"path": str(path)}
                )
                continue
            if definition.id == flow_id:
                candidates.append(definition)

        if version is not None:
            candidates = [d for d in candidates if d.version == version]
        if not candidates:
            suffix = f" version {version}" if version is not None else ""
            raise FlowNotFoundError(
                f"Flow '{flow_id}'{suffix} not found in {self.directory}",
                context={"flow_id": flow_id, "flow_version": version},
            )

        definition = max(candidates, key=lambda d: d.version)
        ensure_valid(definition)
        logger.debug(
            f"Loaded flow '{flow_id}' v{definition.version} from {self.directory}",
            extra={"flow_id": flow_id, "flow_version": definition.version},
        )
        return definition
