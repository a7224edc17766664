"""
Tests for publishing, overwrite permissions, watch resolution and upload warnings.
"""

from wikiupload.core.config import settings
from wikiupload.services import publish
from wikiupload.services.warnings import check_warnings


async def _publish(db, user, tmp_file, name, content=b"content"):
    path = tmp_file(content, name.replace(" ", "_"))
    return await publish.publish_file(
        db, user, path, filename=name, sha1="sha1-" + content.hex(), mime_type="text/plain",
        comment="c", text=None, tags=[], watch=False,
    )


async def test_publish_and_overwrite(db, user, tmp_file):
    first = await _publish(db, user, tmp_file, "report.txt", b"one")
    second = await _publish(db, user, tmp_file, "report.txt", b"two")

    assert first.id == second.id
    assert second.revision == 2
    assert second.size == 3
    assert second.description == "c"
    info = publish.file_info(second)
    assert info["name"] == "Report.txt"
    assert info["sha1"] == "sha1-" + b"two".hex()


async def test_title_permissions(db, user, other_user, make_user, tmp_file):
    mine = await _publish(db, user, tmp_file, "mine.txt")

    assert publish.check_title_permissions(user, None) is None
    assert publish.check_title_permissions(user, mine) is None
    assert publish.check_title_permissions(other_user, mine).code == "fileexists-forbidden"

    admin = await make_user("admin@example.com", is_admin=True)
    assert publish.check_title_permissions(admin, mine) is None

    user.can_reupload = False
    assert publish.check_title_permissions(user, mine).code == "fileexists-forbidden"


async def test_resolve_watch(db, make_user, tmp_file):
    quiet = await make_user("quiet@example.com", watch_uploads=False, watch_creations=False)

    assert await publish.resolve_watch(db, quiet, "new.txt", watchlist="preferences") is False
    assert await publish.resolve_watch(db, quiet, "new.txt", watchlist="watch") is True
    assert await publish.resolve_watch(db, quiet, "new.txt", watchlist="preferences", watch=True) is True

    quiet.watch_default = True
    assert await publish.resolve_watch(db, quiet, "new.txt", watchlist="preferences") is True
    assert await publish.resolve_watch(db, quiet, "new.txt", watchlist="nochange") is False


async def test_warnings(db, user, tmp_file, monkeypatch):
    await _publish(db, user, tmp_file, "Existing.txt", b"abc")

    assert await check_warnings(db, filename="fresh.txt", size=3, sha1="other") == {}
    assert await check_warnings(db, filename="Existing.txt", size=3, sha1="other") == {"exists": "Existing.txt"}
    assert await check_warnings(db, filename="existing.TXT", size=3, sha1="other") == {
        "exists-normalized": "Existing.txt"
    }
    assert await check_warnings(db, filename="copy.txt", size=3, sha1="sha1-" + b"abc".hex()) == {
        "duplicate": ["Existing.txt"]
    }
    assert (await check_warnings(db, filename="a:b.txt", size=3, sha1=None))["badfilename"] == "A-b.txt"

    monkeypatch.setattr(settings, "upload_size_warning", 2)
    assert (await check_warnings(db, filename="fresh.txt", size=3, sha1=None))["large-file"] == [2, 3]
