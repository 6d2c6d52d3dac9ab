from fastapi import Header, HTTPException, Depends
from typing import Optional


# Sessions are owned by the admin web layer, which forwards the authenticated
# user on every request it proxies to this API.
def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
):
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="unauthorized")
    role = (x_user_role or "").strip().upper() or "CASHIER"
    return {"user_id": user_id, "role": role}


def require_admin(user=Depends(get_current_user)):
    if user["role"] != "ADMIN":
        raise HTTPException(status_code=403, detail="permission denied")
    return user
