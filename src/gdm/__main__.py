"""Entry point for running gdm via python -m gdm"""

from .cli import main

if __name__ == "__main__":
    main()
