from .logger import JsonFormatter, TextFormatter, setup_logging

__all__ = [
	"JsonFormatter",
	"TextFormatter",
	"setup_logging",
]
