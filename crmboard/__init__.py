# crmboard: contacts, tasks, and a kanban board over a hosted table store
#
# Components:
#   schema.py      - Data model (Contact, Task, FileAttachment, filters)
#   backends.py    - Table store backends (SQLite, PostgREST over HTTP)
#   gateway.py     - Contact/Task gateways: filter translation, normalization
#   query.py       - Query cache, observers, mutations with invalidation
#   board.py       - Kanban drag state machine and board controller
#   attachments.py - Contact file uploads against a storage provider
#   preferences.py - Persisted task view preference (list/kanban)
#   validation.py  - Field-level validation for contact and task forms
#   formatting.py  - Phone, date, and file size display helpers
#   config.py      - YAML configuration and service wiring
#   server.py      - Flask JSON API

__version__ = "0.3.0"
