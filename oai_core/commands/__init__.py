"""符号指令语言：归一化、索引解析与指令解析。"""

from oai_core.commands.indices import parse_indices
from oai_core.commands.normalizer import normalize
from oai_core.commands.parser import parse_message
from oai_core.commands.schema import Action, ActionKind, Command, CreateRequest, Scope

__all__ = [
    "Action",
    "ActionKind",
    "Command",
    "CreateRequest",
    "Scope",
    "normalize",
    "parse_indices",
    "parse_message",
]
