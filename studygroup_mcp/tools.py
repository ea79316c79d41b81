from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from .auth import AuthManager
from .coordinator import RefreshCoordinator, SessionInvalidated
from .pipeline import RequestPipeline
from .session import Credential


def _credential_summary(credential: Optional[Credential]) -> Dict[str, Any]:
    return {
        "authenticated": credential is not None,
        "hasRefreshToken": bool(credential and credential.refresh_token),
        "expiresAt": credential.expires_at.isoformat() if credential and credential.expires_at else None,
    }


def _page_params(page: int, limit: int, **filters: Any) -> Dict[str, Any]:
    params: Dict[str, Any] = {"page": page, "limit": limit}
    params.update({key: value for key, value in filters.items() if value is not None})
    return params


def register_tools(
    mcp: FastMCP,
    pipeline: RequestPipeline,
    auth: AuthManager,
    coordinator: RefreshCoordinator,
) -> None:
    """Register all study-group tools with FastMCP."""
    _call = pipeline.call
    last_invalidation: Dict[str, Optional[SessionInvalidated]] = {"event": None}

    def _remember(event: SessionInvalidated) -> None:
        last_invalidation["event"] = event

    coordinator.on_session_invalidated(_remember)

    # ---------------- Public ----------------
    @mcp.tool()
    async def health_check() -> Dict[str, Any]:
        """
        Purpose: Liveness probe confirming the MCP server can reach the study-group API.
        Inputs: none.
        Outputs: dict containing the backend health status.
        Behavior: GET /api/health; sends no credential unless one is stored.
        """
        return await _call("GET", "health")

    # ---------------- Auth ----------------
    @mcp.tool()
    async def login(email: str, password: str) -> Dict[str, Any]:
        """
        Purpose: Authenticate once using email/password.
        Inputs:
        - email (str)
        - password (str)
        Outputs: minimal dict indicating success, whether a refresh token is stored, and access token expiry.
        Behavior: Stores the credential server-side; later tools attach and refresh it automatically.
        The password is never stored or echoed.
        """
        credential = await auth.login(email, password)
        last_invalidation["event"] = None
        return {"status": "ok", **_credential_summary(credential)}

    @mcp.tool()
    async def register(name: str, email: str, password: str) -> Dict[str, Any]:
        """
        Purpose: Create a student account and sign in with it.
        Inputs:
        - name (str): display name, 2-100 characters.
        - email (str)
        - password (str): 8+ characters with upper, lower, digit and symbol.
        Outputs: same shape as `login`.
        """
        credential = await auth.register(name, email, password)
        last_invalidation["event"] = None
        return {"status": "ok", **_credential_summary(credential)}

    @mcp.tool()
    async def logout() -> Dict[str, Any]:
        """Revoke the refresh token on the backend and forget the local credential."""
        await auth.logout()
        return {"status": "ok", "authenticated": False}

    @mcp.tool()
    async def session_status() -> Dict[str, Any]:
        """
        Purpose: Report whether a credential is stored and why the last session ended.
        Inputs: none.
        Outputs: dict with `authenticated`, `hasRefreshToken`, `expiresAt`, and
        `invalidated` ({reason: "expired"|"deactivated", message}) or null.
        Behavior: Local only; makes no API call. Use it after a tool fails with a
        session error to tell an expired login from a deactivated account.
        """
        event = last_invalidation["event"]
        status = _credential_summary(auth.store.get())
        status["invalidated"] = {"reason": event.reason.value, "message": event.message} if event else None
        return status

    @mcp.tool()
    async def get_me() -> Dict[str, Any]:
        """GET /api/auth/me for the signed-in user."""
        return await _call("GET", "auth/me")

    # ---------------- Profile ----------------
    @mcp.tool()
    async def get_profile() -> Dict[str, Any]:
        """Fetch the signed-in student's profile (university, career, level, xp, streak)."""
        return await _call("GET", "users/profile")

    @mcp.tool()
    async def update_profile(
        name: Optional[str] = None,
        university: Optional[str] = None,
        career: Optional[str] = None,
        semester: Optional[int] = None,
        avatar: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Purpose: Update editable profile fields.
        Inputs: any subset of name, university, career, semester, avatar; omitted fields are left unchanged.
        Outputs: the updated profile.
        Behavior: PUT /api/users/profile with only the provided fields.
        """
        fields = {"name": name, "university": university, "career": career, "semester": semester, "avatar": avatar}
        json_body = {key: value for key, value in fields.items() if value is not None}
        return await _call("PUT", "users/profile", json_body=json_body)

    # ---------------- Groups ----------------
    @mcp.tool()
    async def list_groups(
        page: int = 1,
        limit: int = 12,
        search: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Purpose: Browse study groups.
        Inputs:
        - page (int), limit (int): pagination.
        - search (str|None): free-text filter on name/description.
        - subject (str|None): restrict to one subject.
        Outputs: dict with the group list and pagination meta.
        """
        return await _call("GET", "groups", params=_page_params(page, limit, search=search, subject=subject))

    @mcp.tool()
    async def get_group(group_id: str) -> Dict[str, Any]:
        """Retrieve one study group with its settings and member counts."""
        return await _call("GET", f"groups/{group_id}")

    @mcp.tool()
    async def join_group(group_id: str, invite_code: Optional[str] = None) -> Dict[str, Any]:
        """
        Purpose: Join a group, or request to join when it is private.
        Inputs:
        - group_id (str)
        - invite_code (str|None): required by private groups.
        Behavior: POST /api/groups/{id}/join.
        """
        json_body = {"inviteCode": invite_code} if invite_code else {}
        return await _call("POST", f"groups/{group_id}/join", json_body=json_body)

    @mcp.tool()
    async def leave_group(group_id: str) -> Dict[str, Any]:
        return await _call("POST", f"groups/{group_id}/leave")

    @mcp.tool()
    async def list_group_members(group_id: str) -> Dict[str, Any]:
        """List members of a group with their roles."""
        return await _call("GET", f"groups/{group_id}/members")

    # ---------------- Study sessions ----------------
    @mcp.tool()
    async def list_sessions(
        group_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """
        Purpose: List study sessions, across all groups or for one group.
        Inputs:
        - group_id (str|None): when set, uses GET /api/groups/{id}/sessions.
        - status (str|None): scheduled, active or completed.
        - page (int), limit (int)
        Outputs: dict with the session list.
        """
        params = _page_params(page, limit, status=status)
        path = f"groups/{group_id}/sessions" if group_id else "sessions"
        return await _call("GET", path, params=params)

    @mcp.tool()
    async def get_session(session_id: str) -> Dict[str, Any]:
        return await _call("GET", f"sessions/{session_id}")

    @mcp.tool()
    async def join_session(session_id: str) -> Dict[str, Any]:
        """Register the signed-in student as a participant of a study session."""
        return await _call("POST", f"sessions/{session_id}/join")

    # ---------------- Forums ----------------
    @mcp.tool()
    async def list_forums(page: int = 1, limit: int = 20, group_id: Optional[str] = None) -> Dict[str, Any]:
        """List discussion forums, optionally only those of one group."""
        return await _call("GET", "forums", params=_page_params(page, limit, groupId=group_id))

    @mcp.tool()
    async def list_forum_posts(forum_id: str, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        return await _call("GET", f"forums/{forum_id}/posts", params=_page_params(page, limit))

    @mcp.tool()
    async def create_forum_post(forum_id: str, title: str, content: str) -> Dict[str, Any]:
        """
        Purpose: Start a new thread in a forum.
        Inputs:
        - forum_id (str)
        - title (str)
        - content (str): post body.
        Behavior: POST /api/forums/{id}/posts.
        """
        return await _call("POST", f"forums/{forum_id}/posts", json_body={"title": title, "content": content})

    # ---------------- Messaging ----------------
    @mcp.tool()
    async def list_group_messages(group_id: str, limit: int = 50, before: Optional[str] = None) -> Dict[str, Any]:
        """
        Purpose: Read a group's chat history, newest first.
        Inputs:
        - group_id (str)
        - limit (int): number of messages.
        - before (str|None): message id or timestamp to page backwards from.
        """
        params: Dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        return await _call("GET", f"groups/{group_id}/messages", params=params)

    @mcp.tool()
    async def send_group_message(group_id: str, content: str) -> Dict[str, Any]:
        """Post a chat message to a group."""
        return await _call("POST", f"groups/{group_id}/messages", json_body={"content": content})

    # ---------------- Notifications ----------------
    @mcp.tool()
    async def list_notifications(page: int = 1, limit: int = 20, unread_only: bool = False) -> Dict[str, Any]:
        """
        Purpose: List the signed-in student's notifications.
        Inputs:
        - page (int), limit (int)
        - unread_only (bool): when True, only unread notifications.
        """
        params = _page_params(page, limit)
        if unread_only:
            params["unread"] = "true"
        return await _call("GET", "notifications", params=params)

    @mcp.tool()
    async def mark_notification_read(notification_id: str) -> Dict[str, Any]:
        return await _call("PUT", f"notifications/{notification_id}/read")

    # ---------------- Achievements ----------------
    @mcp.tool()
    async def list_achievements(unlocked_only: bool = False) -> Dict[str, Any]:
        """
        Purpose: List achievements with the student's progress on each.
        Inputs:
        - unlocked_only (bool): when True, uses GET /api/achievements/user instead of the full catalog.
        """
        return await _call("GET", "achievements/user" if unlocked_only else "achievements")

    @mcp.tool()
    async def get_achievement_stats() -> Dict[str, Any]:
        """Totals of unlocked achievements and earned xp."""
        return await _call("GET", "achievements/stats")
