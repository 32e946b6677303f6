# TeamHub: shared events, task board and issue tracker over a live-synced store
#
# Components:
#   schema.py     - Data model (Event, Task, Issue, TaskStatus, Urgency)
#   errors.py     - SyncError / WriteError / NotFound / AIError / ConfigError
#   store.py      - RemoteStore interface + SQLite document store with snapshot push
#   sync.py       - SyncedCollection: snapshot-replaced client cache, mutations, cleanup
#   assistant.py  - Gemini generateContent client with retry/backoff
#   prompts.py    - Prompt builders and extraction normalization
#   views.py      - Pure renderers (list, calendar, board, issues) and board intents
#   notify.py     - Transient notices and fire-and-forget team pings
#   config.py     - YAML + environment configuration
#   teamhub.py    - Process wiring: one store, shared collections, user intents
