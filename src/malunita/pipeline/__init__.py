"""
Task intelligence pipeline.

Components:
- models.py: candidates, analysis, context map, scored/routed tasks
- context_mapper.py: projects / categories / people / deadlines / time sensitivity
- priority_scorer.py: MUST/SHOULD/COULD + TINY/NORMAL/BIG
- agenda_router.py: Today/Tomorrow/ThisWeek/Upcoming/Someday buckets
- processing.py: end-to-end capture and the store input boundary
"""
