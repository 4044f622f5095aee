"""
Non-fatal analysis issues.

Every "skip and report" condition in graph building and query resolution
lands here.  The run never aborts on these; the report travels alongside
the analysis document so the CLI, the client, and the MCP server can
surface them.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List

logger = logging.getLogger(__name__)


class IssueKind:
    """Issue categories (plain string constants so they serialize as-is)."""
    UNRESOLVABLE_NODE = "unresolvable_node"
    MISSING_ATTRIBUTE = "missing_attribute"
    NO_OWNER = "no_owner"
    AMBIGUOUS_OWNER = "ambiguous_owner"
    UNREADABLE_MAPPER = "unreadable_mapper"


@dataclass
class Issue:
    kind: str
    element: str
    """Label (or description) of the offending element."""
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisReport:
    """Accumulates issues for one analysis run."""
    issues: List[Issue] = field(default_factory=list)

    def add(self, kind: str, element: str, message: str) -> Issue:
        issue = Issue(kind=kind, element=element, message=message)
        self.issues.append(issue)
        logger.warning(f"{message}: {element}")
        return issue

    def of_kind(self, kind: str) -> List[Issue]:
        return [i for i in self.issues if i.kind == kind]

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for issue in self.issues:
            out[issue.kind] = out.get(issue.kind, 0) + 1
        return out

    def __len__(self) -> int:
        return len(self.issues)

    def to_dict(self) -> dict:
        return {"issues": [i.to_dict() for i in self.issues], "counts": self.counts()}
