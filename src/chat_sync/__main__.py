import sys

from chat_sync.cli import main

if __name__ == "__main__":
    sys.exit(main())
