import json
from datetime import datetime
from stowage import db


class Backup(db.Model):
    """A completed, restorable backup. Rows are only ever added or deleted."""
    __tablename__ = 'backups'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    meta_json = db.Column(db.Text, nullable=False)  # JSON: {"steps": {...}, "compressor": "..."}

    @property
    def meta(self) -> dict:
        """Step configuration and compressor recorded at creation time."""
        return json.loads(self.meta_json)

    @property
    def compressor(self) -> str:
        return self.meta.get('compressor')

    @property
    def steps(self) -> dict:
        return self.meta.get('steps', {})

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'created_at': self.created_at.isoformat(),
            'compressor': self.compressor,
            'steps': list(self.steps.keys()),
        }

    def __repr__(self):
        return f'<Backup {self.name}>'
