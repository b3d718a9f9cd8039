"""cadenza - message-driven task workers with backlog-driven autoscaling"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.models.app import CadenzaConfig, load_config
from .core.models.autoscaler import AutoscalerConfig
from .core.models.broker import PostgresConfig
from .core.models.resilience import ResilienceConfig
from .core.models.task import TaskDescriptor, TimeoutAction, WorkModel
from .core.config import ConfigHolder
from .core.defaults import ExitCode
from .core.errors import (
    CadenzaError,
    ConfigurationError,
    ErrorCode,
    SignalUnitCrash,
    WorkError,
    WorkTimeoutError,
)
from .core.task import TaskDefinition, Work, task
from .core.metrics import InstrumentedWork, instrument
from .core.codec.payload import PayloadError, encode_payload, preprocess_payload
from .core.queue.gateway import (
    DeathRecord,
    Job,
    Message,
    MessageMetadata,
    QueueGateway,
)
from .core.queue.postgres import PostgresQueue
from .core.runtime.task_runtime import TaskRuntime
from .core.autoscaler.autoscaler import Autoscaler
from .core.autoscaler.spawner import MultiprocessingSpawner, ProcessSpawner
from .core.utils.cancellation import CancellationToken

__all__ = [
    # Configuration
    'CadenzaConfig',
    'load_config',
    'AutoscalerConfig',
    'PostgresConfig',
    'ResilienceConfig',
    'ConfigHolder',
    # Tasks
    'TaskDescriptor',
    'TimeoutAction',
    'WorkModel',
    'TaskDefinition',
    'Work',
    'task',
    'InstrumentedWork',
    'instrument',
    # Payloads
    'PayloadError',
    'encode_payload',
    'preprocess_payload',
    # Queue
    'DeathRecord',
    'Job',
    'Message',
    'MessageMetadata',
    'QueueGateway',
    'PostgresQueue',
    # Runtime and scaling
    'TaskRuntime',
    'Autoscaler',
    'MultiprocessingSpawner',
    'ProcessSpawner',
    'CancellationToken',
    'ExitCode',
    # Errors
    'CadenzaError',
    'ConfigurationError',
    'ErrorCode',
    'SignalUnitCrash',
    'WorkError',
    'WorkTimeoutError',
]
