import json
from models import db
from models.audit_log import AuditLog
from utils.request_info import client_ip, user_agent


def log_event(action: str, user_id=None, metadata=None):
    row = AuditLog(
        user_id=user_id,
        action=action,
        ip=client_ip(),
        user_agent=user_agent(),
        metadata_json=json.dumps(metadata) if metadata else None
    )
    db.session.add(row)
    db.session.commit()
