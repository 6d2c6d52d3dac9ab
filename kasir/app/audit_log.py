import json
from typing import Optional


def write_audit_log(cur, user_id: Optional[str], action: str, entity_type: str, entity_id, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb)
        """,
        (user_id, action, entity_type, entity_id, json.dumps(details or {}, default=str)),
    )
