from codeagent.config.settings import AgentSettings, load_config, load_settings

__all__ = ["AgentSettings", "load_config", "load_settings"]
