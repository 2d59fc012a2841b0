from .config_loader import config_loader as config
from .settings import ConfigError, MultiLevelSettings, TradingSettings

__all__ = ['config', 'ConfigError', 'MultiLevelSettings', 'TradingSettings']
