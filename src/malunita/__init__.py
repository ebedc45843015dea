"""
Malunita: capture thoughts, turn them into prioritized tasks, keep them in sync.

Subpackages:
- pipeline: context mapper -> priority scorer -> agenda router
- tasks: optimistic task store, offline queue, remote store
- llm: extraction / idea analysis services (LLM-backed or offline)
- cli, connectors: console entrypoint
"""
