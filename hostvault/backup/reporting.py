"""
Read-only views over a domain's artifacts: status, statistics and recent listings.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .health import classify_freshness
from .storage import LocalStorage, StorageError


def format_size(num_bytes: Optional[int]) -> str:
    """Human readable size, e.g. 1.5 GB."""
    if num_bytes is None:
        return '-'
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != 'B' else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} TB"


def _artifact_entry(artifact, now: datetime) -> Dict[str, Any]:
    return {
        'name': artifact.name,
        'path': str(artifact.path),
        'timestamp': artifact.timestamp.isoformat(),
        'age_days': artifact.age_days(now),
        'size_bytes': artifact.size_bytes,
        'has_checksum': artifact.checksum_path.exists(),
    }


def domain_status(domain, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Freshness status of a domain's latest artifact.

    Unlike a full health check this never verifies checksums.
    """
    now = now or datetime.now()
    storage = LocalStorage.for_domain(domain)
    status = {
        'domain': domain.name,
        'storage_root': str(storage.base_path),
        'exists': storage.exists,
        'latest': None,
        'freshness': 'critical',
        'free_bytes': None,
    }
    if not storage.exists:
        status['message'] = f"Backup directory not found: {storage.base_path}"
        return status

    latest = storage.latest_artifact()
    try:
        status['free_bytes'] = storage.free_bytes()
    except StorageError:
        pass

    if latest is None:
        status['message'] = "No backups found"
        return status

    entry = _artifact_entry(latest, now)
    status['latest'] = entry
    status['freshness'] = classify_freshness(entry['age_days'], domain.warn_days, domain.critical_days).value
    status['message'] = f"{latest.name} (age: {entry['age_days']} days)"
    return status


def domain_statistics(domain, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Artifact count, total size, oldest and newest artifact of a domain."""
    now = now or datetime.now()
    storage = LocalStorage.for_domain(domain)
    artifacts = storage.list_artifacts()
    total = storage.total_size()

    return {
        'domain': domain.name,
        'storage_root': str(storage.base_path),
        'count': len(artifacts),
        'total_size_bytes': total,
        'average_size_bytes': total // len(artifacts) if artifacts else 0,
        'oldest': _artifact_entry(artifacts[0], now) if artifacts else None,
        'latest': _artifact_entry(artifacts[-1], now) if artifacts else None,
        'retention_days': domain.retention_days,
    }


def list_recent(domain, days: int = 7, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Artifacts created within the last `days` days, oldest first."""
    if days < 0:
        raise ValueError(f"Days must be >= 0, got {days}")
    now = now or datetime.now()
    cutoff = now - timedelta(days=days)
    storage = LocalStorage.for_domain(domain)
    return [
        _artifact_entry(artifact, now)
        for artifact in storage.list_artifacts()
        if artifact.timestamp >= cutoff
    ]
