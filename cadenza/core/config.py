"""Process-wide holder for the active configuration."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from cadenza.core.logging import apply_level, get_logger
from cadenza.core.models.app import CadenzaConfig, load_config

logger = get_logger('config')


class ConfigHolder:
    """
    Owns the current CadenzaConfig and knows how to reload it.

    ``loader`` is called with no arguments on every reload; by default it
    re-reads the YAML file and environment the same way startup does.
    ``overrides`` (top-level field values, e.g. a ``--loglevel`` given on the
    command line) are applied on top of every reloaded config.
    """

    def __init__(
        self,
        config: CadenzaConfig,
        loader: Optional[Callable[[], CadenzaConfig]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self._config = config
        self._loader = loader or load_config
        self.overrides = dict(overrides or {})

    @property
    def config(self) -> CadenzaConfig:
        return self._config

    def reload(self) -> bool:
        """Re-read the configuration; returns True if anything changed."""
        fresh = self._loader()
        if self.overrides:
            fresh = fresh.model_copy(update=self.overrides)
        changed = fresh != self._config
        self._config = fresh
        if changed:
            logger.info('Configuration reloaded with changes')
            self.install()
        else:
            logger.debug('Configuration reloaded, no changes')
        return changed

    def install(self) -> None:
        """Apply process-level settings (currently the log level)."""
        apply_level(self._config.loglevel_int)
