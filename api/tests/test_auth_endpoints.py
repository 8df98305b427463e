# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Integration tests for authentication endpoints.
"""

import json
import pytest

from models.enums import UserStatus

PASSWORD = "senhaForte123"


@pytest.fixture
def stored_user(flask_app, sample_user):
    """``sample_user`` with a real password hash, as stored in MongoDB."""
    user = sample_user.model_copy(update={"password_hash": flask_app.auth_service.hash_password(PASSWORD)})
    return user


class TestLogin:

    def test_login_success(self, as_document, client, mock_services, stored_user):
        mock_services['mongodb_service'].find_one.return_value = as_document(stored_user)

        response = client.post('/api/auth/login', data=json.dumps({
            "email": "Contato@Instituicao.org",
            "password": PASSWORD
        }), content_type='application/json')

        data = response.get_json()
        assert response.status_code == 200
        assert data['token_type'] == "Bearer"
        assert data['user']['institution_id'] == stored_user.institution_id
        assert 'password_hash' not in data['user']
        mock_services['mongodb_service'].find_one.assert_called_once_with("users", {"email": "contato@instituicao.org"})
        mock_services['mongodb_service'].update_by_id.assert_called_once()

        entity, action = mock_services['audit_service'].log_action.call_args.args[1::2]
        assert (entity, action) == ("user", "login")

    def test_wrong_password(self, as_document, client, mock_services, stored_user):
        mock_services['mongodb_service'].find_one.return_value = as_document(stored_user)

        response = client.post('/api/auth/login', data=json.dumps({
            "email": stored_user.email,
            "password": "outraSenha1"
        }), content_type='application/json')

        assert response.status_code == 401
        assert response.get_json()['detail'] == "Invalid email or password"
        assert mock_services['audit_service'].log_action.call_args.kwargs['after']['success'] is False

    def test_unknown_email(self, client, mock_services):
        response = client.post('/api/auth/login', data=json.dumps({
            "email": "ninguem@instituicao.org",
            "password": PASSWORD
        }), content_type='application/json')

        assert response.status_code == 401
        assert response.get_json()['detail'] == "Invalid email or password"

    def test_inactive_account(self, as_document, client, mock_services, stored_user):
        inactive = stored_user.model_copy(update={"status": UserStatus.INACTIVE.value})
        mock_services['mongodb_service'].find_one.return_value = as_document(inactive)

        response = client.post('/api/auth/login', data=json.dumps({
            "email": stored_user.email,
            "password": PASSWORD
        }), content_type='application/json')

        assert response.status_code == 401
        assert "inactive" in response.get_json()['detail']

    def test_missing_password(self, client, mock_services):
        response = client.post('/api/auth/login', data=json.dumps({"email": "a@b.org"}),
                               content_type='application/json')

        assert response.status_code == 400


class TestTokens:

    def test_me(self, as_document, client, mock_services, sample_user, institution_headers):
        mock_services['mongodb_service'].find_by_id.return_value = as_document(sample_user)

        response = client.get('/api/auth/me', headers=institution_headers)

        data = response.get_json()
        assert response.status_code == 200
        assert data['email'] == sample_user.email
        assert "delivery:create" in data['permissions']
        assert data['_links']['institution']['href'] == f"/api/institutions/{sample_user.institution_id}"

    def test_refresh(self, as_document, client, mock_services, flask_app, sample_user):
        tokens = flask_app.auth_service.generate_tokens(sample_user)
        mock_services['mongodb_service'].find_by_id.return_value = as_document(sample_user)

        response = client.post('/api/auth/refresh', data=json.dumps({
            "refresh_token": tokens['refresh_token']
        }), content_type='application/json')

        data = response.get_json()
        assert response.status_code == 200
        assert data['access_token'] != tokens['access_token']
        assert 'refresh_token' not in data

    def test_access_token_cannot_refresh(self, client, mock_services, flask_app, sample_user):
        tokens = flask_app.auth_service.generate_tokens(sample_user)

        response = client.post('/api/auth/refresh', data=json.dumps({
            "refresh_token": tokens['access_token']
        }), content_type='application/json')

        assert response.status_code == 401

    def test_revoked_refresh_token(self, client, mock_services, flask_app, sample_user):
        tokens = flask_app.auth_service.generate_tokens(sample_user)
        mock_services['redis_service'].is_token_blocked.return_value = True

        response = client.post('/api/auth/refresh', data=json.dumps({
            "refresh_token": tokens['refresh_token']
        }), content_type='application/json')

        assert response.status_code == 401
        assert "revoked" in response.get_json()['detail']

    def test_logout_revokes_both_tokens(self, client, mock_services, flask_app, sample_user, institution_headers):
        refresh_token = flask_app.auth_service.generate_tokens(sample_user)['refresh_token']

        response = client.post('/api/auth/logout', headers=institution_headers, data=json.dumps({
            "refresh_token": refresh_token
        }))

        data = response.get_json()
        assert response.status_code == 200
        assert data['tokens_revoked'] == 2
        assert mock_services['redis_service'].block_token.call_count == 2
        ttl = mock_services['redis_service'].block_token.call_args_list[0].args[1]
        assert ttl > 0

    def test_logout_without_token(self, client, mock_services):
        response = client.post('/api/auth/logout')

        assert response.status_code == 401
        mock_services['redis_service'].block_token.assert_not_called()
