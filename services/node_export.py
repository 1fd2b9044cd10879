"""Node export: the nodes table as a JSON document for the CLI."""
import json
import logging

from models.node import Node
from services.db import SessionLocal

logger = logging.getLogger(__name__)

EXPORT_STATUSES = ('active', 'inactive')


def export_nodes_json(out_path=None, status=None, session_factory=SessionLocal):
    """
    Serialize nodes, highest credits first, as a JSON array.

    ``status`` restricts the export to 'active' or 'inactive' nodes. When
    ``out_path`` is given the document is also written to that file.
    """
    if status is not None and status not in EXPORT_STATUSES:
        raise ValueError(f"status must be one of {EXPORT_STATUSES}, got {status!r}")

    session = session_factory()
    try:
        query = session.query(Node)
        if status:
            query = query.filter(Node.status == status)
        nodes = [node.to_dict() for node in query.order_by(Node.credits.desc(), Node.ip)]
    finally:
        session.close()

    document = json.dumps(nodes, ensure_ascii=False, indent=2)
    if out_path:
        try:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(document)
        except OSError as e:
            logger.error(f"❌ Failed to write node export to {out_path}: {e}")
            raise
        logger.info(f"📤 Exported {len(nodes)} nodes to {out_path}")
    return document
