"""
Issue Tracker - Open -> Resolved lifecycle for work items.

Issues live in the public ledger next to auctions but form their own
correlation groups. An auction may reference an issue by issue_id.
"""

import uuid as uuid_lib
from typing import Callable, Optional

from ghissuemarket.core.errors import InvalidInputError, InvalidTransitionError
from ghissuemarket.core.ledger import (
    Issue,
    IssueCreated,
    IssueResolved,
    IssueState,
    IssueView,
    LedgerTarget,
    LedgerWriter,
    fold,
)
from ghissuemarket.utils.logger import get_logger
from ghissuemarket.utils.validation import validate_amount, validate_identifier, validate_string

logger = get_logger("issue")


class IssueTracker:
    def __init__(
        self,
        writer: LedgerWriter,
        uuid_factory: Optional[Callable[[], str]] = None,
    ):
        self.writer = writer
        self.uuid_factory = uuid_factory or (lambda: str(uuid_lib.uuid4()))

    def get_issue(self, issue_id: str) -> Optional[IssueView]:
        return fold(self.writer.read(LedgerTarget.PUBLIC)).issues.get(issue_id)

    def create_issue(
        self,
        issue_id: str,
        description: str = "",
        estimated_cost: float = 0.0,
        metadata: str = "",
    ) -> Issue:
        """Record a new open issue."""
        for valid, err in (
            validate_identifier(issue_id, "issue_id"),
            validate_string(description, "issue_description"),
            validate_amount(estimated_cost, "estimated_cost"),
            validate_string(metadata, "metadata"),
        ):
            if not valid:
                raise InvalidInputError(err)

        issue = Issue(
            uuid=self.uuid_factory(),
            issue_id=issue_id,
            issue_description=description,
            estimated_cost=estimated_cost,
            metadata=metadata,
        )
        written = self.writer.append(LedgerTarget.PUBLIC, IssueCreated(issue=issue, uuid=issue.uuid))

        logger.info(f"Issue {issue_id} created, estimated cost {estimated_cost}")
        return written.issue

    def resolve_issue(self, issue_id: str, resolution_details: str = "") -> IssueResolved:
        """
        Resolve an open issue.

        Raises:
            InvalidTransitionError: issue missing or already Resolved
        """
        for valid, err in (
            validate_identifier(issue_id, "issue_id"),
            validate_string(resolution_details, "resolution_details"),
        ):
            if not valid:
                raise InvalidInputError(err)

        with self.writer.session(LedgerTarget.PUBLIC) as session:
            view = fold(session.events()).issues.get(issue_id)
            if view is None:
                raise InvalidTransitionError(f"Issue {issue_id} does not exist")
            if view.state != IssueState.OPEN:
                raise InvalidTransitionError(f"Issue {issue_id} is already {view.state.value}")

            written = session.append(
                IssueResolved(
                    issue_id=issue_id,
                    resolution_details=resolution_details,
                    uuid=view.uuid,
                )
            )

        logger.info(f"Issue {issue_id} resolved")
        return written
