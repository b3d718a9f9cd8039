# cadenza/core/models/app.py
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from cadenza.core.models.broker import PostgresConfig
from cadenza.core.models.resilience import ResilienceConfig
from cadenza.core.models.autoscaler import AutoscalerConfig
from cadenza.core.errors import ConfigurationError, ErrorCode
from cadenza.core.utils.url import mask_database_url
import logging
import os

import yaml

CONFIG_PATH_ENV = 'CADENZA_CONFIG'
DATABASE_URL_ENV = 'CADENZA_DATABASE_URL'
LOGLEVEL_ENV = 'CADENZA_LOGLEVEL'

_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class CadenzaConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    broker: PostgresConfig
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    autoscaler: AutoscalerConfig = Field(default_factory=AutoscalerConfig)
    loglevel: str = 'INFO'

    @field_validator('loglevel', mode='before')
    @classmethod
    def validate_loglevel(cls, v: Any) -> str:
        level = str(v).upper()
        if level not in _LEVELS:
            raise ConfigurationError(
                message=f'unknown log level {v!r}',
                code=ErrorCode.CONFIG_INVALID_FILE,
                help_text=f'use one of: {", ".join(_LEVELS)}',
            )
        return level

    @property
    def loglevel_int(self) -> int:
        return getattr(logging, self.loglevel, logging.INFO)

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the configuration in a human-readable format.
        The database password is masked.
        """
        if logger is None:
            logger = logging.getLogger()
        logger.info('CadenzaConfig:\n%s', self._format_for_logging())

    def _format_for_logging(self) -> str:
        lines: list[str] = []
        lines.append('  broker:')
        lines.append(f'    database_url: {mask_database_url(self.broker.database_url)}')
        lines.append(f'    exchange: {self.broker.exchange}')
        lines.append(f'    dead_letter_exchange: {self.broker.dead_letter_exchange}')
        lines.append(f'    pool_size: {self.broker.pool_size}')
        lines.append('  resilience:')
        lines.append(
            f'    db_retry: initial={self.resilience.db_retry_initial_ms}ms, '
            f'max={self.resilience.db_retry_max_ms}ms, '
            f'attempts={self.resilience.db_retry_max_attempts or "infinite"}'
        )
        lines.append('  autoscaler:')
        lines.append(f'    max_workers: {self.autoscaler.max_workers}')
        lines.append(f'    sample_size: {self.autoscaler.sample_size}')
        lines.append(f'    tick_interval: {self.autoscaler.tick_interval}s')
        lines.append(f'    throttle_interval: {self.autoscaler.throttle_interval}s')
        lines.append(f'  loglevel: {self.loglevel}')
        return '\n'.join(lines)


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, encoding='utf-8') as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigurationError(
            message=f'cannot read config file {path!r}',
            code=ErrorCode.CONFIG_INVALID_FILE,
            notes=[str(exc)],
        ) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            message=f'config file {path!r} is not valid YAML',
            code=ErrorCode.CONFIG_INVALID_FILE,
            notes=[str(exc)],
        ) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            message=f'config file {path!r} must contain a mapping',
            code=ErrorCode.CONFIG_INVALID_FILE,
            notes=[f'got: {type(data).__name__}'],
        )
    return data


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> CadenzaConfig:
    """
    Build a CadenzaConfig from a YAML file overlaid with environment variables.

    ``path`` defaults to ``$CADENZA_CONFIG``. ``CADENZA_DATABASE_URL`` and
    ``CADENZA_LOGLEVEL`` override the matching file values.
    """
    env = os.environ if environ is None else environ
    path = path or env.get(CONFIG_PATH_ENV)

    data: dict[str, Any] = _read_yaml(path) if path else {}

    database_url = env.get(DATABASE_URL_ENV)
    if database_url:
        broker = dict(data.get('broker') or {})
        broker['database_url'] = database_url
        data['broker'] = broker
    loglevel = env.get(LOGLEVEL_ENV)
    if loglevel:
        data['loglevel'] = loglevel

    if not data.get('broker'):
        raise ConfigurationError(
            message='no broker configured',
            code=ErrorCode.CONFIG_INVALID_FILE,
            notes=[f'config file: {path!r}'],
            help_text=(
                f'set {DATABASE_URL_ENV}=postgresql+psycopg://... '
                f'or add a broker.database_url entry to the file named by {CONFIG_PATH_ENV}'
            ),
        )

    try:
        return CadenzaConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(
            message='invalid configuration',
            code=ErrorCode.CONFIG_INVALID_FILE,
            notes=[str(exc)],
        ) from exc
