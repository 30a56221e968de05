"""
Main entry point for running pediatric-rag as a module.

Example usage:
    python -m pediatric_rag
    python -m pediatric_rag --health
"""

from .cli.interactive import main

if __name__ == "__main__":
    main()
