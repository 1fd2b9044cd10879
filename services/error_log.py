import logging
from concurrent.futures import ThreadPoolExecutor, wait
from sqlalchemy import func
from models.error_log import ErrorLog

logger = logging.getLogger(__name__)


class ErrorLogSink:
    """
    Best-effort writer for the error_logs table.

    With an executor, rows are written fire-and-forget from a worker thread;
    without one they are written inline. Either way a failing write is only
    reported to the process log and never reaches the caller.
    """

    def __init__(self, session_factory, executor=None):
        self.session_factory = session_factory
        self.executor = executor
        self._pending = []

    @classmethod
    def background(cls, session_factory):
        return cls(session_factory, executor=ThreadPoolExecutor(max_workers=1, thread_name_prefix="error-log"))

    def record(self, source, phase, error, node_id=None, details=None):
        if self.executor is None:
            self._write(source, phase, str(error), node_id, details)
            return
        try:
            future = self.executor.submit(self._write, source, phase, str(error), node_id, details)
        except RuntimeError as e:
            logger.error(f"Failed to log error to database: {e}")
            return
        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(future)

    def _write(self, source, phase, error, node_id, details):
        session = self.session_factory()
        try:
            session.add(ErrorLog(source=source, phase=phase, node_id=node_id, error=error, details=details))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to log error to database: {e}")
        finally:
            session.close()

    def flush(self, timeout=None):
        """Wait for queued writes."""
        if self._pending:
            wait(self._pending, timeout=timeout)
            self._pending = [f for f in self._pending if not f.done()]

    def shutdown(self):
        if self.executor is not None:
            self.executor.shutdown(wait=True)


def query_error_logs(session, source=None, phase=None, limit=100):
    """Latest error log rows plus counts grouped by (source, phase)."""
    query = session.query(ErrorLog)
    stats_query = session.query(ErrorLog.source, ErrorLog.phase, func.count(ErrorLog.id).label('count'))
    if source:
        query = query.filter(ErrorLog.source == source)
        stats_query = stats_query.filter(ErrorLog.source == source)
    if phase:
        query = query.filter(ErrorLog.phase == phase)
        stats_query = stats_query.filter(ErrorLog.phase == phase)

    rows = query.order_by(ErrorLog.timestamp.desc(), ErrorLog.id.desc()).limit(limit).all()
    stats = stats_query.group_by(ErrorLog.source, ErrorLog.phase).all()
    return {
        "success": True,
        "count": len(rows),
        "errors": [row.to_dict() for row in rows],
        "stats": [{"source": s.source, "phase": s.phase, "count": s.count} for s in stats],
    }
