"""
Tests for the deferred assembly and publish jobs and the polling flow around them.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from wikiupload.models.upload import StashedFile, UploadResult, UploadStage
from wikiupload.services import stash
from wikiupload.services.chunks import ChunkAssembler
from wikiupload.worker import _assemble_upload_chunks, _cleanup_expired_stash, _publish_stashed_file

UPLOAD_URL = "/api/upload"


async def _post(client, headers, data, chunk=None):
    files = {"chunk": ("blob", chunk, "application/octet-stream")} if chunk is not None else None
    return await client.post(UPLOAD_URL, headers=headers, data=data, files=files)


async def _status(client, headers, filekey):
    return (await _post(client, headers, {"filekey": filekey, "checkstatus": "1"})).json()


async def _queue_chunked(client, headers, filename, content):
    first = await _post(
        client, headers, {"filename": filename, "filesize": str(len(content)), "offset": "0"}, content[:2000]
    )
    filekey = first.json()["filekey"]
    last = await _post(
        client,
        headers,
        {
            "filename": filename,
            "filesize": str(len(content)),
            "offset": "2000",
            "filekey": filekey,
            "async": "1",
        },
        content[2000:],
    )
    return filekey, last.json()


async def test_async_chunked_upload_and_publish(client, auth_headers, user, db, small_chunks, async_uploads, queued_jobs):
    content = b"a" * 2000 + b"b" * 1000
    filekey, queued = await _queue_chunked(client, auth_headers, "big.txt", content)

    assert queued == {"result": "Poll", "stage": "queued", "filekey": filekey, "sessionkey": filekey}
    assert queued_jobs == [("assemble", (str(user.id), "big.txt", filekey))]
    assert await _status(client, auth_headers, filekey) == {
        "result": "Poll",
        "stage": "queued",
        "filekey": filekey,
    }

    await _assemble_upload_chunks(user.id, "big.txt", filekey)

    assembled = await _status(client, auth_headers, filekey)
    assert assembled["result"] == "Success"
    assert assembled["stage"] == "done"
    assembled_key = assembled["filekey"]
    assert assembled_key != filekey
    assert await db.get(StashedFile, filekey) is None

    # A redelivered job finds a terminal session and changes nothing.
    await _assemble_upload_chunks(user.id, "big.txt", filekey)
    assert await _status(client, auth_headers, filekey) == assembled

    publish = {"filename": "big.txt", "filekey": assembled_key, "async": "1", "comment": "async"}
    polled = await _post(client, auth_headers, publish)
    assert polled.json()["result"] == "Poll"
    assert polled.json()["filekey"] == assembled_key
    assert queued_jobs[-1] == ("publish", (str(user.id), "big.txt", assembled_key, "async", [], "async", True))

    duplicate = await _post(client, auth_headers, publish)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "publishfailed"

    await _publish_stashed_file(user.id, "big.txt", assembled_key, "async", [], "async", True)

    done = await _status(client, auth_headers, assembled_key)
    assert done["result"] == "Success"
    assert done["stage"] == "done"
    assert done["filename"] == "Big.txt"
    assert done["fileinfo"]["size"] == 3000
    assert await db.get(StashedFile, assembled_key) is None

    await _publish_stashed_file(user.id, "big.txt", assembled_key, "async", [], "async", True)
    assert await _status(client, auth_headers, assembled_key) == done


async def test_async_assembly_failure_is_reported(client, auth_headers, user, small_chunks, async_uploads):
    filekey, _ = await _queue_chunked(client, auth_headers, "fake.png", b"x" * 3000)

    await _assemble_upload_chunks(user.id, "fake.png", filekey)

    error = await _status(client, auth_headers, filekey)
    assert error["error"]["code"] == "stashfailed"
    assert error["error"]["details"] == ["verification-error"]


async def test_async_publish_verification_failure(client, auth_headers, user, db, tmp_file, async_uploads):
    record = await stash.stash_file(db, user, tmp_file(b"not a png"), is_partial=False, filename="Fake.png")

    polled = await _post(client, auth_headers, {"filename": "fake.png", "filekey": record.filekey, "async": "1"})
    assert polled.json()["result"] == "Poll"

    await _publish_stashed_file(user.id, "fake.png", record.filekey, "", [], "", False)

    session = await stash.get_session_status(db, user, record.filekey)
    assert session.result == UploadResult.FAILURE
    assert session.stage.value == "publish"
    error = await _status(client, auth_headers, record.filekey)
    assert error["error"]["code"] == "verification-error"


async def test_async_file_upload_is_stashed_then_queued(client, auth_headers, user, async_uploads, queued_jobs):
    response = await client.post(
        UPLOAD_URL,
        headers=auth_headers,
        data={"filename": "later.txt", "async": "1"},
        files={"file": ("later.txt", b"published later", "text/plain")},
    )

    body = response.json()
    assert body["result"] == "Poll"
    assert queued_jobs == [("publish", (str(user.id), "later.txt", body["filekey"], "", [], "", True))]


async def test_cleanup_job(db, user, tmp_file):
    record = await stash.stash_file(db, user, tmp_file(b"old"), is_partial=False, filename="Old.txt")
    record.updated_at = datetime.now(timezone.utc) - timedelta(days=30)
    await db.commit()

    assert await _cleanup_expired_stash() == 1


async def test_assembly_losing_a_race_keeps_the_first_result(
    client, auth_headers, user, db, small_chunks, async_uploads, monkeypatch
):
    filekey, _ = await _queue_chunked(client, auth_headers, "big.txt", b"a" * 2000 + b"b" * 1000)
    winner = {"ok": True, "filekey": "winner.key.txt", "filename": "big.txt"}
    assemble = ChunkAssembler.assemble

    async def assemble_after_another_run(self, key, *, filename):
        assembled = await assemble(self, key, filename=filename)
        await stash.set_session_status(
            self.db,
            self.user,
            key,
            stash.UploadProgress(result=UploadResult.SUCCESS, stage=UploadStage.DONE, status=winner),
        )
        return assembled

    monkeypatch.setattr(ChunkAssembler, "assemble", assemble_after_another_run)

    await _assemble_upload_chunks(user.id, "big.txt", filekey)

    assert (await _status(client, auth_headers, filekey))["filekey"] == "winner.key.txt"
    complete = await db.scalars(select(StashedFile).where(StashedFile.is_partial.is_(False)))
    assert complete.all() == []
