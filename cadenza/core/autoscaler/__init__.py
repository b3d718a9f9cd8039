# cadenza/core/autoscaler/__init__.py
"""
Worker-pool supervision.

Main components:
- Autoscaler: samples queue depth and starts workers while the backlog grows
- ProcessSpawner: interface for starting and reaping worker processes
- MultiprocessingSpawner: ProcessSpawner using the ``spawn`` start method

Example usage:
    from cadenza.core.autoscaler import Autoscaler, MultiprocessingSpawner

    spawner = MultiprocessingSpawner('myapp.tasks:audit', config.model_dump())
    scaler = Autoscaler(audit.descriptor, queue, spawner, config.autoscaler)
    await scaler.run_forever()
"""

from cadenza.core.autoscaler.autoscaler import Autoscaler, QueueSample, is_trending_up
from cadenza.core.autoscaler.spawner import MultiprocessingSpawner, ProcessSpawner

__all__ = [
    'Autoscaler',
    'QueueSample',
    'is_trending_up',
    'MultiprocessingSpawner',
    'ProcessSpawner',
]
