"""
Tests for token issuance and the current-user endpoint.
"""

from wikiupload.utils.security import get_password_hash


async def test_token_and_me(client, make_user):
    await make_user("reader@example.com", password_hash=get_password_hash("correct horse"))

    response = await client.post(
        "/api/auth/token", json={"username": "Reader@example.com", "password": "correct horse"}
    )
    assert response.status_code == 200
    token = response.json()["access_token"]

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "reader@example.com"
    assert me.json()["can_upload"] is True


async def test_wrong_password(client, make_user):
    await make_user("reader@example.com", password_hash=get_password_hash("correct horse"))

    response = await client.post("/api/auth/token", json={"username": "reader@example.com", "password": "nope"})

    assert response.status_code == 401


async def test_me_requires_token(client):
    response = await client.get("/api/auth/me")

    assert response.status_code == 401
