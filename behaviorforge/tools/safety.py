from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatch

SAFE_TOOL_PATTERNS: tuple[str, ...] = (
    "*read*",
    "*list*",
    "*search*",
    "*get*",
    "*show*",
    "*view*",
    "*analyze*",
    "*validate*",
    "*check*",
    "*inspect*",
    "*browse*",
    "*query*",
    "*fetch*",
    "*status*",
    "*info*",
    "*log*",
    "*diff*",
    "*history*",
)

UNSAFE_TOOL_PATTERNS: tuple[str, ...] = (
    "*create*file*",
    "*write*file*",
    "*delete*file*",
    "*remove*file*",
    "*move*file*",
    "*edit*file*",
    "*create*directory*",
    "*mkdir*",
    "*rmdir*",
    "*git*commit*",
    "*git*push*",
    "*git*merge*",
    "*git*reset*",
    "*git*checkout*",
    "*git*add*",
    "*insert*",
    "*update*",
    "*delete*",
    "*drop*",
    "*execute*",
    "*run*command*",
    "*shell*",
    "*system*",
    "*process*",
    "*upload*",
    "*download*",
    "*post*",
    "*put*",
    "*patch*",
)


@dataclass(frozen=True)
class ToolSafetyPolicy:
    """Static allow/deny classification of provider tool names.

    Explicitly safe names win over unsafe patterns; names matching neither
    list are treated as safe.
    """

    safe_patterns: tuple[str, ...] = SAFE_TOOL_PATTERNS
    unsafe_patterns: tuple[str, ...] = UNSAFE_TOOL_PATTERNS

    def is_safe(self, tool: str) -> bool:
        identifier = tool.strip().lower()
        if any(fnmatch(identifier, pattern) for pattern in self.safe_patterns):
            return True
        if any(fnmatch(identifier, pattern) for pattern in self.unsafe_patterns):
            return False
        return True
