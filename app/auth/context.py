from dataclasses import dataclass, field

ROLE_PERMISSIONS: dict[str, list[str]] = {
    "admin": [
        "deploy.read",
        "deploy.write",
    ],
    "viewer": [
        "deploy.read",
    ],
}


@dataclass
class AuthContext:
    user_id: str
    role: str
    permissions: list[str] = field(default_factory=list)

    def assert_permission(self, permission: str) -> None:
        from fastapi import HTTPException

        if permission not in self.permissions:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
