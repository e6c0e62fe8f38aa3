"""
Entry point for running issue_swarm as a module.

Allows running as: python -m issue_swarm
"""

from issue_swarm.cli import cli_main

if __name__ == "__main__":
    cli_main()
