import asyncio
import logging
import secrets
from datetime import UTC, datetime, timedelta

from catering_ops.assignees import UNKNOWN_USER, display_name, fetch_user_metadata
from catering_ops.context import ProviderService
from catering_ops.database import Order, eq, is_null, select_one
from catering_ops.errors import BadRequestError, ForbiddenError, NotFoundError
from catering_ops.models import (
    Invitation,
    MemberStatus,
    ProviderMember,
    TeamMemberWithUser,
)
from catering_ops.optimistic import (
    MutationCommand,
    prepend,
    remove_by_id,
    replace_by_id,
    strip_temporary,
    temporary_id,
)
from catering_ops.roles import INVITABLE_ROLES, ProviderRole

logger = logging.getLogger(__name__)


def members_key(provider_id: str) -> tuple[str, ...]:
    return ("team", "members", provider_id)


def invitations_key(provider_id: str) -> tuple[str, ...]:
    return ("team", "invitations", provider_id)


async def enrich_member(store, member: ProviderMember) -> TeamMemberWithUser:
    metadata = await fetch_user_metadata(store, member.user_id)
    if metadata is None:
        return TeamMemberWithUser(
            **member.model_dump(), full_name=UNKNOWN_USER, email=""
        )
    return TeamMemberWithUser(
        **member.model_dump(),
        full_name=display_name(metadata),
        email=metadata.email or "",
        avatar_url=metadata.raw_user_meta_data.get("avatar_url"),
    )


class TeamService(ProviderService):
    async def members(self) -> list[TeamMemberWithUser]:
        provider_id = self.provider_id

        async def fetch() -> list[TeamMemberWithUser]:
            rows = await self.store.select(
                "provider_members",
                filters=[eq("provider_id", provider_id)],
                order=Order("created_at"),
            )
            members = strip_temporary([ProviderMember.model_validate(r) for r in rows])
            return list(
                await asyncio.gather(*(enrich_member(self.store, m) for m in members))
            )

        return await self.query(members_key(provider_id), fetch)

    async def invitations(self) -> list[Invitation]:
        """Pending invitations, newest first."""
        provider_id = self.provider_id

        async def fetch() -> list[Invitation]:
            rows = await self.store.select(
                "provider_invitations",
                filters=[eq("provider_id", provider_id), is_null("accepted_at")],
                order=Order("created_at", ascending=False),
            )
            return strip_temporary([Invitation.model_validate(r) for r in rows])

        return await self.query(invitations_key(provider_id), fetch)

    async def _get_member(self, member_id: str) -> ProviderMember:
        row = await select_one(
            self.store,
            "provider_members",
            filters=[eq("id", member_id), eq("provider_id", self.provider_id)],
        )
        if row is None:
            raise NotFoundError("Team member")
        return ProviderMember.model_validate(row)

    async def _update_member(self, member_id: str, values: dict) -> ProviderMember:
        rows = await self.store.update(
            "provider_members",
            values,
            filters=[eq("id", member_id), eq("provider_id", self.provider_id)],
        )
        if not rows:
            raise NotFoundError("Team member")
        return ProviderMember.model_validate(rows[0])

    def _expiry(self) -> datetime:
        return datetime.now(UTC) + timedelta(hours=self.settings.invitation_ttl_hours)

    async def invite_member(self, email: str, role: ProviderRole) -> Invitation:
        self.require("can_invite_members", "Only owners and admins can invite members")
        if role not in INVITABLE_ROLES:
            raise BadRequestError(f"Cannot invite a member with the {role} role")

        provider_id = self.provider_id
        invited_by = self.user_id
        email = email.strip().lower()
        expires_at = self._expiry()

        async def execute() -> Invitation:
            existing = await select_one(
                self.store,
                "provider_invitations",
                filters=[
                    eq("provider_id", provider_id),
                    eq("email", email),
                    is_null("accepted_at"),
                ],
            )
            if existing is not None:
                raise BadRequestError(f"An invitation for {email} is already pending")

            row = await self.store.insert(
                "provider_invitations",
                {
                    "provider_id": provider_id,
                    "email": email,
                    "role": role,
                    "invited_by": invited_by,
                    "token": secrets.token_urlsafe(32),
                    "expires_at": expires_at,
                    "accepted_at": None,
                },
            )
            return Invitation.model_validate(row)

        placeholder = Invitation(
            id=temporary_id(),
            provider_id=provider_id,
            email=email,
            role=role,
            invited_by=invited_by,
            expires_at=expires_at,
            created_at=datetime.now(UTC),
        )
        return await self.mutations.apply(
            MutationCommand(
                collection_key=invitations_key(provider_id),
                predict=prepend(placeholder),
                execute=execute,
                success_message="Invitation sent successfully",
                success_description=f"An invitation was sent to {email}",
                error_title="Failed to send invitation",
            )
        )

    async def resend_invitation(self, invitation_id: str) -> Invitation:
        self.require("can_invite_members", "Only owners and admins can resend invitations")
        provider_id = self.provider_id
        expires_at = self._expiry()

        async def execute() -> Invitation:
            rows = await self.store.update(
                "provider_invitations",
                {"token": secrets.token_urlsafe(32), "expires_at": expires_at},
                filters=[
                    eq("id", invitation_id),
                    eq("provider_id", provider_id),
                    is_null("accepted_at"),
                ],
            )
            if not rows:
                raise NotFoundError("Invitation")
            return Invitation.model_validate(rows[0])

        return await self.mutations.apply(
            MutationCommand(
                collection_key=invitations_key(provider_id),
                predict=replace_by_id(invitation_id, expires_at=expires_at),
                execute=execute,
                success_message="Invitation resent",
                error_title="Failed to resend invitation",
            )
        )

    def _protect_owner(self, member: ProviderMember, action: str) -> None:
        if member.role == ProviderRole.OWNER:
            raise ForbiddenError(f"The provider owner cannot be {action}")

    async def update_member_status(
        self, member_id: str, status: MemberStatus
    ) -> ProviderMember:
        self.require("can_manage_team", "You do not have permission to manage the team")
        member = await self._get_member(member_id)
        if status == MemberStatus.SUSPENDED:
            self._protect_owner(member, "suspended")
            if member.user_id == self.user_id:
                raise BadRequestError("You cannot suspend yourself")

        message = (
            "Member suspended" if status == MemberStatus.SUSPENDED else "Member activated"
        )
        return await self.mutations.apply(
            MutationCommand(
                collection_key=members_key(self.provider_id),
                predict=replace_by_id(member_id, status=status),
                execute=lambda: self._update_member(member_id, {"status": status}),
                success_message=message,
                error_title="Failed to update member status",
            )
        )

    async def update_member_role(
        self, member_id: str, role: ProviderRole
    ) -> ProviderMember:
        self.require("can_manage_roles", "Only owners and admins can change roles")
        member = await self._get_member(member_id)
        self._protect_owner(member, "demoted")
        if role == ProviderRole.OWNER:
            raise BadRequestError("Ownership cannot be granted by a role change")

        return await self.mutations.apply(
            MutationCommand(
                collection_key=members_key(self.provider_id),
                predict=replace_by_id(member_id, role=role),
                execute=lambda: self._update_member(member_id, {"role": role}),
                success_message="Role updated successfully",
                error_title="Failed to update role",
            )
        )

    async def assign_member_team(
        self, member_id: str, team_id: str | None
    ) -> ProviderMember:
        self.require("can_manage_team", "You do not have permission to manage the team")
        provider_id = self.provider_id
        await self._get_member(member_id)

        async def execute() -> ProviderMember:
            if team_id is not None:
                team = await select_one(
                    self.store,
                    "teams",
                    filters=[eq("id", team_id), eq("provider_id", provider_id)],
                )
                if team is None:
                    raise NotFoundError("Team")
            return await self._update_member(member_id, {"team_id": team_id})

        return await self.mutations.apply(
            MutationCommand(
                collection_key=members_key(provider_id),
                predict=replace_by_id(member_id, team_id=team_id),
                execute=execute,
                success_message=(
                    "Member assigned to team" if team_id else "Member removed from team"
                ),
                error_title="Failed to update team assignment",
            )
        )

    async def remove_member(self, member_id: str) -> None:
        self.require("can_remove_members", "Only owners and admins can remove members")
        member = await self._get_member(member_id)
        self._protect_owner(member, "removed")
        provider_id = self.provider_id

        async def execute() -> None:
            removed = await self.store.delete(
                "provider_members",
                filters=[eq("id", member_id), eq("provider_id", provider_id)],
            )
            if not removed:
                raise NotFoundError("Team member")

        await self.mutations.apply(
            MutationCommand(
                collection_key=members_key(provider_id),
                predict=remove_by_id(member_id),
                execute=execute,
                success_message="Member removed successfully",
                error_title="Failed to remove member",
            )
        )
