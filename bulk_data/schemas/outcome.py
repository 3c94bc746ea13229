from html import escape
from typing import List
from pydantic import BaseModel


class OutcomeText(BaseModel):
    status: str = "generated"
    div: str


class OutcomeIssue(BaseModel):
    severity: str
    code: str
    diagnostics: str


class OperationOutcome(BaseModel):
    resourceType: str = "OperationOutcome"
    text: OutcomeText
    issue: List[OutcomeIssue]

    @classmethod
    def create(
        cls,
        message: str,
        severity: str = "error",
        issue_code: str = "processing"
    ) -> "OperationOutcome":
        """Build a single-issue outcome with a generated narrative."""
        div = (
            '<div xmlns="http://www.w3.org/1999/xhtml">'
            '<h1>Operation Outcome</h1><table border="0"><tr>'
            f'<td style="font-weight:bold;">{severity}</td><td>[]</td>'
            f'<td><pre>{escape(message.strip())}</pre></td></tr></table></div>'
        )
        return cls(
            text=OutcomeText(div=div),
            issue=[OutcomeIssue(severity=severity, code=issue_code, diagnostics=message)]
        )
