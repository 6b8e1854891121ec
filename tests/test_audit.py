"""Tests for the audit trail and the admin audit endpoints."""
import csv
import io
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from projecthub_auth.audit import AuditFilter, AuditTrail, ClientInfo
from projecthub_auth.errors import NotFoundError
from projecthub_auth.geolocation import GeoLocation
from projecthub_auth.models import AuditAction, AuditStatus, Severity

from .conftest import bearer, login

BERLIN = ClientInfo('10.0.0.3', 'pytest-agent', GeoLocation('Berlin', 'DE', 52.52, 13.40))


class TestAuditTrail:
    @pytest.fixture(autouse=True)
    def setup(self, services, make_account, clock):
        self.clock = clock
        self.audit = services.audit
        self.alice = make_account(email='alice@example.com', name='Alice')
        self.bob = make_account(email='bob@example.com', name='Bob')

    def seed(self):
        self.audit.log(self.alice.id, AuditAction.LOGIN, BERLIN)
        self.clock.advance(minutes=1)
        self.audit.log(self.alice.id, AuditAction.LOGIN_FAILED, ClientInfo('10.0.0.1'),
                       status=AuditStatus.FAILURE, severity=Severity.HIGH)
        self.clock.advance(minutes=1)
        self.audit.log(self.bob.id, AuditAction.ACCOUNT_LOCKED, ClientInfo('10.0.0.2'),
                       status=AuditStatus.WARNING, severity=Severity.HIGH,
                       details={'attemptCount': 5})
        self.clock.advance(minutes=1)
        self.audit.log(self.bob.id, AuditAction.MFA_VERIFIED, ClientInfo('10.0.0.2'))

    def test_entry_carries_client_and_location(self):
        entry_id = self.audit.log(self.alice.id, AuditAction.LOGIN, BERLIN, details={'method': 'password'})

        entry = self.audit.get(entry_id)

        assert entry['action'] == 'login'
        assert entry['ipAddress'] == '10.0.0.3'
        assert entry['location']['city'] == 'Berlin'
        assert entry['status'] == 'success'
        assert entry['severity'] == 'low'
        assert entry['details'] == {'method': 'password'}
        assert entry['user']['email'] == 'alice@example.com'
        assert entry['createdAt'] == self.clock().isoformat()

    def test_write_failure_is_swallowed(self):
        session = MagicMock()
        session.commit.side_effect = OperationalError('INSERT', {}, Exception('disk full'))
        trail = AuditTrail(lambda: session, self.clock)

        assert trail.log(self.alice.id, AuditAction.LOGIN) is None
        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_query_newest_first(self):
        self.seed()
        result = self.audit.query(AuditFilter())
        assert [log['action'] for log in result['logs']] == [
            'mfa_verified', 'account_locked', 'login_failed', 'login',
        ]
        assert result['totalLogs'] == 4
        assert not result['hasMore']

    def test_filters(self):
        self.seed()
        assert self.audit.query(AuditFilter(user_id=self.bob.id))['totalLogs'] == 2
        assert self.audit.query(AuditFilter(severity='high'))['totalLogs'] == 2
        assert self.audit.query(AuditFilter(status='failure'))['totalLogs'] == 1
        assert self.audit.query(AuditFilter(action='login'))['totalLogs'] == 1
        assert self.audit.query(AuditFilter(search='berlin'))['totalLogs'] == 1
        assert self.audit.query(AuditFilter(search='10.0.0.2'))['totalLogs'] == 2

    def test_date_range(self):
        self.seed()
        start = datetime(2024, 6, 1, 12, 1, 0)
        end = datetime(2024, 6, 1, 12, 2, 0)
        result = self.audit.query(AuditFilter(start=start, end=end))
        assert [log['action'] for log in result['logs']] == ['account_locked', 'login_failed']

    def test_pagination(self):
        self.seed()
        first = self.audit.query(AuditFilter(), page=1, limit=3)
        second = self.audit.query(AuditFilter(), page=2, limit=3)

        assert first['totalPages'] == 2
        assert first['hasMore']
        assert len(second['logs']) == 1
        assert not second['hasMore']
        assert second['currentPage'] == 2

    def test_for_user(self):
        self.seed()
        result = self.audit.for_user(self.alice.id)
        assert result['user']['name'] == 'Alice'
        assert result['totalLogs'] == 2
        with pytest.raises(NotFoundError):
            self.audit.for_user('missing')

    def test_get_missing(self):
        with pytest.raises(NotFoundError, match='Audit log not found'):
            self.audit.get(9999)

    def test_stats(self):
        self.seed()
        stats = self.audit.stats()

        assert stats['summary'] == {
            'failedLogins': 1, 'lockouts': 1, 'successfulLogins': 1, 'mfaEvents': 1,
        }
        severities = {row['_id']: row['count'] for row in stats['severityStats']}
        assert severities == {'high': 2, 'low': 2}
        assert stats['topIPs'][0] == {'_id': '10.0.0.2', 'count': 2}
        assert stats['timeline'] == [{'_id': '2024-06-01', 'count': 4}]
        assert stats['criticalEvents'] == []

    def test_csv_export(self):
        self.seed()
        text = self.audit.export_csv(AuditFilter())
        rows = list(csv.reader(io.StringIO(text)))

        assert rows[0] == ['Date', 'Time', 'User', 'Email', 'Action', 'Status', 'Severity',
                           'IP Address', 'Location', 'Details']
        assert len(rows) == 5
        locked = rows[2]
        assert locked[2:7] == ['Bob', 'bob@example.com', 'account_locked', 'warning', 'high']
        assert locked[9] == 'attemptCount=5'
        assert rows[4][8] == 'Berlin, DE'
        assert text.startswith('"Date","Time"')

    def test_csv_export_respects_limit(self):
        self.seed()
        rows = list(csv.reader(io.StringIO(self.audit.export_csv(AuditFilter(), limit=2))))
        assert len(rows) == 3


class TestAuditEndpoints:
    @pytest.fixture(autouse=True)
    def setup(self, client, make_account):
        self.client = client
        make_account(email='admin@example.com', role='admin', name='Admin')
        make_account(email='worker@example.com', role='worker', name='Worker')
        self.admin_token = login(client, 'admin@example.com').get_json()['token']
        self.worker_token = login(client, 'worker@example.com').get_json()['token']

    def test_requires_authentication(self, app):
        response = app.test_client().get('/api/audit')
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Not authorized, no token'

    def test_non_admin_forbidden(self):
        response = self.client.get('/api/audit', headers=bearer(self.worker_token))
        assert response.status_code == 403
        assert response.get_json()['message'] == "User role 'worker' is not authorized to access this route"

    def test_admin_lists_logs(self):
        response = self.client.get('/api/audit?action=login&limit=10', headers=bearer(self.admin_token))
        assert response.status_code == 200
        body = response.get_json()
        assert body['totalLogs'] == 2
        assert {log['user']['email'] for log in body['logs']} == {'admin@example.com', 'worker@example.com'}

    def test_invalid_date(self):
        response = self.client.get('/api/audit?startDate=yesterday', headers=bearer(self.admin_token))
        assert response.status_code == 400

    def test_stats(self):
        response = self.client.get('/api/audit/stats', headers=bearer(self.admin_token))
        assert response.status_code == 200
        assert response.get_json()['summary']['successfulLogins'] == 2

    def test_export(self):
        response = self.client.get('/api/audit/export', headers=bearer(self.admin_token))
        assert response.status_code == 200
        assert response.mimetype == 'text/csv'
        assert response.headers['Content-Disposition'] == 'attachment; filename="audit-logs-2024-06-01.csv"'
        assert response.get_data(as_text=True).startswith('"Date"')

    def test_single_entry_and_missing_entry(self):
        listing = self.client.get('/api/audit', headers=bearer(self.admin_token)).get_json()
        entry_id = listing['logs'][0]['_id']

        found = self.client.get(f'/api/audit/{entry_id}', headers=bearer(self.admin_token))
        missing = self.client.get('/api/audit/99999', headers=bearer(self.admin_token))

        assert found.status_code == 200
        assert found.get_json()['_id'] == entry_id
        assert missing.status_code == 404
