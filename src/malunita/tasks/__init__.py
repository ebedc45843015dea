"""
Task subsystem.

Components:
- task_models.py: data structures (Task, NewTaskInput, QueuedMutation, ...)
- optimistic_store.py: user-scoped optimistic cache with rollback
- offline_queue.py: SQLite-backed FIFO of mutations waiting for the network
- remote_store.py: SQLite reference implementation of the remote store
- connectivity.py / events.py: online signal and confirmed-change observers
"""
