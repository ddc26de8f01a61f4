"""
Offline-first synchronization.

- queue_manager: durable mutation queue, push (drain) and pull
- squash: queue deduplication and push ordering
- id_remap: temporary ids and the remap pass after creates
- pull: incremental/full pulls with mark-and-sweep
- mapper: local records <-> remote payloads
- engine: sync timing and the mutually exclusive cycle
"""
