from .background import BackgroundTasks
from .codec import Outcome, canonical_json, dump_outcome, load_outcome, signature, to_str
from .logger import JsonFormatter, setup_logging, setup_logging_from_config

__all__ = [
	"BackgroundTasks",
	"Outcome",
	"canonical_json",
	"dump_outcome",
	"load_outcome",
	"signature",
	"to_str",
	"JsonFormatter",
	"setup_logging",
	"setup_logging_from_config",
]
