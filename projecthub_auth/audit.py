"""
Audit Trail

Write-once, read-many log of every security-relevant event. Recording is a
best-effort side channel: it runs in its own database session and a failure
to write is logged, never raised into the operation that triggered it.
"""

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload

from .errors import NotFoundError
from .geolocation import GeoLocation
from .models import Account, AuditAction, AuditLog, AuditStatus, Severity
from .utils import utcnow

logger = logging.getLogger(__name__)

CSV_HEADER = ['Date', 'Time', 'User', 'Email', 'Action', 'Status', 'Severity',
              'IP Address', 'Location', 'Details']


@dataclass
class ClientInfo:
    """Where a request came from, as recorded on every audit entry."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[GeoLocation] = None


@dataclass
class AuditFilter:
    user_id: Optional[str] = None
    action: Optional[str] = None
    status: Optional[str] = None
    severity: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None


class AuditTrail:
    def __init__(self, session_factory: Callable, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def record(
        self,
        user_id: str,
        action: AuditAction,
        status: AuditStatus = AuditStatus.SUCCESS,
        severity: Severity = Severity.LOW,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoLocation] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        """Append one entry. Returns its id, or None if the write failed."""
        db = self.session_factory()
        try:
            entry = AuditLog(
                user_id=user_id,
                action=action.value,
                status=status.value,
                severity=severity.value,
                ip_address=ip_address,
                user_agent=user_agent,
                city=location.city if location else None,
                country=location.country if location else None,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                details=details,
                created_at=self.clock(),
            )
            db.add(entry)
            db.commit()
            return entry.id
        except Exception:
            db.rollback()
            logger.exception(f"Failed to write audit entry action={action.value} user={user_id}")
            return None
        finally:
            db.close()

    def log(self, user_id: str, action: AuditAction, client: Optional[ClientInfo] = None,
            status: AuditStatus = AuditStatus.SUCCESS, severity: Severity = Severity.LOW,
            details: Optional[Dict[str, Any]] = None) -> Optional[int]:
        client = client or ClientInfo()
        return self.record(
            user_id, action, status=status, severity=severity,
            ip_address=client.ip_address, user_agent=client.user_agent,
            location=client.location, details=details,
        )

    # ==================== QUERIES ====================

    def _filtered(self, db, filters: AuditFilter):
        query = db.query(AuditLog)
        if filters.user_id:
            query = query.filter(AuditLog.user_id == filters.user_id)
        if filters.action:
            query = query.filter(AuditLog.action == filters.action)
        if filters.status:
            query = query.filter(AuditLog.status == filters.status)
        if filters.severity:
            query = query.filter(AuditLog.severity == filters.severity)
        if filters.start:
            query = query.filter(AuditLog.created_at >= filters.start)
        if filters.end:
            query = query.filter(AuditLog.created_at <= filters.end)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.filter(or_(
                AuditLog.action.ilike(pattern),
                AuditLog.ip_address.ilike(pattern),
                AuditLog.city.ilike(pattern),
                AuditLog.country.ilike(pattern),
            ))
        return query

    def query(self, filters: AuditFilter, page: int = 1, limit: int = 50) -> dict:
        page = max(1, page)
        limit = max(1, limit)
        db = self.session_factory()
        try:
            query = self._filtered(db, filters)
            total = query.count()
            logs = (
                query.options(joinedload(AuditLog.account))
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            skip = (page - 1) * limit
            return {
                'logs': [log.to_dict(include_user=True) for log in logs],
                'currentPage': page,
                'totalPages': -(-total // limit),
                'totalLogs': total,
                'hasMore': skip + len(logs) < total,
            }
        finally:
            db.close()

    def get(self, entry_id: int) -> dict:
        db = self.session_factory()
        try:
            log = (
                db.query(AuditLog)
                .options(joinedload(AuditLog.account))
                .filter(AuditLog.id == entry_id)
                .first()
            )
            if log is None:
                raise NotFoundError('Audit log not found')
            return log.to_dict(include_user=True)
        finally:
            db.close()

    def for_user(self, user_id: str, page: int = 1, limit: int = 20) -> dict:
        db = self.session_factory()
        try:
            account = db.query(Account).filter(Account.id == user_id).first()
            if account is None:
                raise NotFoundError('User not found')
            user = {'_id': account.id, 'name': account.name, 'email': account.email, 'role': account.role}
        finally:
            db.close()

        result = self.query(AuditFilter(user_id=user_id), page=page, limit=limit)
        result['user'] = user
        return result

    def stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        db = self.session_factory()
        try:
            base = AuditFilter(start=start, end=end)

            def grouped(column):
                rows = (
                    self._filtered(db, base)
                    .with_entities(column, func.count(AuditLog.id))
                    .group_by(column)
                    .order_by(func.count(AuditLog.id).desc())
                    .all()
                )
                return [{'_id': key, 'count': count} for key, count in rows]

            def count(**kwargs):
                return self._filtered(db, AuditFilter(start=start, end=end, **kwargs)).count()

            critical = (
                self._filtered(db, AuditFilter(start=start, end=end, severity=Severity.CRITICAL.value))
                .options(joinedload(AuditLog.account))
                .order_by(AuditLog.created_at.desc())
                .limit(10)
                .all()
            )
            mfa_events = (
                self._filtered(db, base)
                .filter(AuditLog.action.in_([
                    AuditAction.MFA_ENABLED.value,
                    AuditAction.MFA_VERIFIED.value,
                    AuditAction.MFA_FAILED.value,
                ]))
                .count()
            )

            since = self.clock() - timedelta(days=7)
            day = func.strftime('%Y-%m-%d', AuditLog.created_at) \
                if db.get_bind().dialect.name == 'sqlite' else func.date(AuditLog.created_at)
            timeline = (
                db.query(day, func.count(AuditLog.id))
                .filter(AuditLog.created_at >= since)
                .group_by(day)
                .order_by(day)
                .all()
            )

            top_ips = grouped(AuditLog.ip_address)[:10]

            return {
                'actionStats': grouped(AuditLog.action),
                'statusStats': grouped(AuditLog.status),
                'severityStats': grouped(AuditLog.severity),
                'criticalEvents': [log.to_dict(include_user=True) for log in critical],
                'summary': {
                    'failedLogins': count(action=AuditAction.LOGIN_FAILED.value),
                    'lockouts': count(action=AuditAction.ACCOUNT_LOCKED.value),
                    'successfulLogins': count(action=AuditAction.LOGIN.value,
                                              status=AuditStatus.SUCCESS.value),
                    'mfaEvents': mfa_events,
                },
                'topIPs': top_ips,
                'timeline': [{'_id': str(key), 'count': n} for key, n in timeline],
            }
        finally:
            db.close()

    def export_csv(self, filters: AuditFilter, limit: int = 10000) -> str:
        """Flat CSV export, newest first, capped at ``limit`` rows."""
        db = self.session_factory()
        try:
            logs = (
                self._filtered(db, filters)
                .options(joinedload(AuditLog.account))
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(limit)
                .all()
            )
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator='\n')
            writer.writerow(CSV_HEADER)
            for log in logs:
                created = log.created_at
                location = f"{log.city}, {log.country}" if log.city and log.country else 'Unknown'
                writer.writerow([
                    created.strftime('%Y-%m-%d') if created else '',
                    created.strftime('%H:%M:%S') if created else '',
                    log.account.name if log.account else 'N/A',
                    log.account.email if log.account else 'N/A',
                    log.action,
                    log.status,
                    log.severity,
                    log.ip_address or '',
                    location,
                    _flatten_details(log.details),
                ])
            return buffer.getvalue()
        finally:
            db.close()


def _flatten_details(details) -> str:
    if not details:
        return ''
    if isinstance(details, dict):
        return '; '.join(f"{key}={value}" for key, value in sorted(details.items()))
    return str(details)
