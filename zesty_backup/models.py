from datetime import datetime
from zesty_backup import db


class CycleRun(db.Model):
    """Execution history of backup, upload, clean and restore runs"""
    __tablename__ = 'cycle_runs'

    id = db.Column(db.Integer, primary_key=True)
    operation = db.Column(db.String(20), nullable=False)  # backup, upload, clean, restore
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    archive_name = db.Column(db.String(255))
    file_size_bytes = db.Column(db.BigInteger)
    error_kind = db.Column(db.String(50))  # Exception class name
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    def to_dict(self, include_logs: bool = False) -> dict:
        data = {
            'id': self.id,
            'operation': self.operation,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'archive_name': self.archive_name,
            'file_size_bytes': self.file_size_bytes,
            'error_kind': self.error_kind,
            'error_message': self.error_message,
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    @classmethod
    def latest(cls, operation: str):
        return cls.query.filter_by(operation=operation).order_by(cls.started_at.desc(), cls.id.desc()).first()

    @classmethod
    def recent(cls, limit: int = 50):
        return cls.query.order_by(cls.started_at.desc(), cls.id.desc()).limit(limit).all()

    def __repr__(self):
        return f'<CycleRun {self.operation} status={self.status}>'
