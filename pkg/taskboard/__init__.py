# Task board core: Kanban tasks, ordering, XP, and live change broadcast
#
# Components:
#   schema.py       - Data model (Task, Project, Comment, User, TaskStatus, TaskPriority)
#   store.py        - SQLite persistence layer
#   positions.py    - Column position policy and ordering
#   gamification.py - XP/level award on task completion
#   validation.py   - Request schemas and validator
#   errors.py       - Error taxonomy (InvalidInput, Unauthorized, Forbidden, NotFound, InternalError)
#   events.py       - EventHub websocket broadcast
#   mutations.py    - BoardService: validate → persist → side effects → broadcast
#   auth.py         - Caller identity resolution
#   config.py       - YAML/env configuration
#   client.py       - API client, board reconciliation, channel listener
