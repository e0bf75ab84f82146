"""Workspace access checks run before any quota work."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from admission.db.models.core import Workspace, WorkspaceMember
from admission.domain.models import AuthorizationContext
from admission.logging import logger
from admission.services.exceptions import NotFound, Unauthorized


class WorkspaceAccess:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def is_member(self, workspace_id: int, user_id: int) -> bool:
        stmt = select(WorkspaceMember.id).where(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def authorize(self, context: AuthorizationContext, workspace_id: int) -> Workspace:
        """Return the workspace if ``context`` may submit work to it.

        Suspension wins over everything, including elevated roles.
        """

        workspace = await self.session.get(Workspace, workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found.", details={"workspace_id": workspace_id})
        if workspace.is_suspended:
            logger.info("workspace_suspended_denied", workspace_id=workspace_id, user_id=context.user_id)
            raise Unauthorized(
                "Workspace is suspended.",
                code="workspace_suspended",
                details={"workspace_id": workspace_id},
            )
        if context.is_elevated or workspace.owner_id == context.user_id:
            return workspace
        if not await self.is_member(workspace_id, context.user_id):
            raise Unauthorized(
                "You do not have access to this workspace.",
                details={"workspace_id": workspace_id},
            )
        return workspace


__all__ = ["WorkspaceAccess"]
