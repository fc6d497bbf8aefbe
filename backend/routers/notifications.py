"""
Notifications router: the provider's notification centre.

Backed by the notifications table through NotificationInbox. Rows are always
filtered by the caller's user id; the admin client is used because the
notification RLS policies key on Supabase auth, not the Auth0 subject.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from middleware.auth import get_provider_context, ProviderContext
from services.notifier import NotificationInbox

router = APIRouter(prefix="/notifications", tags=["notifications"])


def get_inbox(ctx: ProviderContext = Depends(get_provider_context)) -> NotificationInbox:
    from services.supabase_client import get_admin_client

    return NotificationInbox(get_admin_client(), ctx.user_id)


@router.get("/")
async def list_notifications(inbox: NotificationInbox = Depends(get_inbox)):
    """Newest first, with an unread count for the bell badge."""
    try:
        items = inbox.fetch_all()
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {
        "notifications": items,
        "unread_count": sum(1 for n in items if not n.get("read")),
    }


@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_as_read(
    notification_id: str,
    inbox: NotificationInbox = Depends(get_inbox),
):
    try:
        inbox.mark_as_read(notification_id)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("/read-all")
async def mark_all_as_read(inbox: NotificationInbox = Depends(get_inbox)):
    try:
        updated = inbox.mark_all_as_read()
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"updated": updated}


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss(
    notification_id: str,
    inbox: NotificationInbox = Depends(get_inbox),
):
    try:
        inbox.dismiss(notification_id)
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))
