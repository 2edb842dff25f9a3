from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    def at_least(self, other: "Role") -> bool:
        """True when this role sits at or above ``other`` on the ladder."""
        return self.rank >= other.rank

    def outranks(self, other: "Role") -> bool:
        return self.rank > other.rank


# owner > admin > member
ROLE_RANK: dict["Role", int] = {
    Role.OWNER: 3,
    Role.ADMIN: 2,
    Role.MEMBER: 1,
}

# Roles that may manage a tenant's membership
MANAGER_ROLES: tuple["Role", ...] = (Role.OWNER, Role.ADMIN)


class InvitationRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"

    def as_role(self) -> Role:
        return Role(self.value)


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    REVOKED = "revoked"


# pending is the only state with outgoing transitions
INVITATION_TRANSITIONS: dict[InvitationStatus, list[InvitationStatus]] = {
    InvitationStatus.PENDING: [
        InvitationStatus.ACCEPTED,
        InvitationStatus.DECLINED,
        InvitationStatus.REVOKED,
    ],
    InvitationStatus.ACCEPTED: [],
    InvitationStatus.DECLINED: [],
    InvitationStatus.REVOKED: [],
}
