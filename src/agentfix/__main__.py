# agentfix/__main__.py
from agentfix.cli import main

if __name__ == "__main__":
    main()
