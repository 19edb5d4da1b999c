# Taskboard: dashboard data layer for projects, boards and tasks
#
# Components:
#   schema.py        - Records (Profile, Project, Board, Task) and status/priority enums
#   gateway.py       - SQLite data gateway with {code, message} errors
#   identity.py      - Accounts, sessions and identity-lifecycle events
#   storage.py       - Avatar file storage
#   session.py       - Session store and the SessionContext handed to views
#   profiles.py      - Profile synchronizer and profile/preference updates
#   aggregators.py   - Histograms, progress, trend, calendar and due-date helpers
#   views.py         - Per-view loaders with stale-response protection
#   mutations.py     - Project/task create, update and delete flows
#   notifications.py - Toasts, Telegram forwarding and due-date reminders
#   config.py        - YAML + environment configuration
