from .commands import COMMANDS, CommandDispatch, CommandRejected
from .records import RECORD_FIELDS, encode_sample, encode_text

__all__ = [
    "CommandDispatch",
    "CommandRejected",
    "COMMANDS",
    "RECORD_FIELDS",
    "encode_sample",
    "encode_text",
]
