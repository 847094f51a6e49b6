# Production board: program tracking, optimistic stage moves, real-time reconciliation
#
# Components:
#   schema.py   - Data model (Program, Stage, ChangeEvent)
#   remote.py   - Remote data service adapters (SQLite, hosted REST API)
#   store.py    - In-memory cache of server-confirmed programs
#   overlay.py  - Optimistic overlay and reconciliation policy
#   board.py    - Board projection (stage columns, filters, search)
#   events.py   - Change channel between the service and the session loop
#   session.py  - Board session lifecycle and reconciliation loop
#   config.py   - YAML/env configuration
