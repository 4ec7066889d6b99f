"""AgentSocial: give a command-line coding agent a chat identity."""

__version__ = "0.3.0"
