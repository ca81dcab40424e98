"""Allow running the server via: python -m inbox_assistant.server"""

from inbox_assistant.server.cli import main

main()
