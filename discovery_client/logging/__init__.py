from discovery_client.logging.config import NOISY_LOGGERS, configure_from_settings, configure_logging

__all__ = ["configure_logging", "configure_from_settings", "NOISY_LOGGERS"]
