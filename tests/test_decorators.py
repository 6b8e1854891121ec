import pytest
from flask import g, jsonify

from projecthub_auth.decorators import has_role, role_required
from projecthub_auth.models import Account, Role

from .conftest import bearer, login


class TestHasRole:
    @pytest.mark.parametrize('role, allowed, expected', [
        ('admin', ('admin',), True),
        ('client', ('admin',), False),
        ('developer', ('worker',), True),
        ('worker', ('developer',), True),
        ('client', ('worker', 'client'), True),
        ('superuser', ('admin',), False),
    ])
    def test_role_matrix(self, role, allowed, expected):
        assert has_role(Account(role=role), *allowed) is expected

    def test_developer_is_an_alias(self):
        assert Role.DEVELOPER.effective is Role.WORKER
        assert Role.parse(' Worker ') is Role.WORKER


class TestRoleRequired:
    @pytest.fixture(autouse=True)
    def setup(self, app, make_account):
        @app.route('/api/test/workers-only')
        @role_required('worker')
        def workers_only():
            return jsonify({'role': g.account.role})

        self.client = app.test_client()
        make_account(email='dev@example.com', role='developer')
        make_account(email='client@example.com', role='client')

    def test_developer_passes_worker_gate(self):
        token = login(self.client, 'dev@example.com').get_json()['token']
        response = self.client.get('/api/test/workers-only', headers=bearer(token))
        assert response.status_code == 200
        assert response.get_json() == {'role': 'developer'}

    def test_client_is_refused(self):
        token = login(self.client, 'client@example.com').get_json()['token']
        response = self.client.get('/api/test/workers-only', headers=bearer(token))
        assert response.status_code == 403
