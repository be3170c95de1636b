"""
Service Layer

Service classes shared by the CLI and the agent.
"""

from codeagent.services.config_service import ConfigService

__all__ = [
    "ConfigService",
]
