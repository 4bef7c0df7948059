from zlink_node.config.config_manager import Config, ConfigManager, init_config

__all__ = ['Config', 'ConfigManager', 'init_config']
