"""
Tests for chunk bounds, appends and assembly of chunked uploads.
"""

from pathlib import Path

import pytest

from wikiupload.core.errors import ApiError, ClientError, ConsistencyError
from wikiupload.models.upload import StashedFile, UploadResult, UploadStage
from wikiupload.services import stash
from wikiupload.services.chunks import ChunkAssembler


def test_check_bounds(small_chunks):
    ChunkAssembler.check_bounds(0, 1000, 3000)
    ChunkAssembler.check_bounds(2000, 10, 2010)

    with pytest.raises(ClientError) as too_big:
        ChunkAssembler.check_bounds(2000, 1001, 3000)
    assert too_big.value.code == "invalid-chunk"

    with pytest.raises(ClientError) as too_small:
        ChunkAssembler.check_bounds(0, 999, 3000)
    assert too_small.value.code == "chunk-too-small"


async def test_add_chunks_and_assemble(db, user, tmp_file, small_chunks):
    assembler = ChunkAssembler(db, user, policy_checks=[])

    first = await assembler.add_chunk(tmp_file(b"a" * 2000, "c0"), filename="Notes.txt", file_size=3000, offset=0)
    assert not first.complete
    assert first.offset == 2000
    session = await stash.get_session_status(db, user, first.filekey)
    assert (session.result, session.stage, session.offset) == (UploadResult.CONTINUE, UploadStage.UPLOADING, 2000)

    last = await assembler.add_chunk(
        tmp_file(b"b" * 1000, "c1"), filename="Notes.txt", file_size=3000, offset=2000, filekey=first.filekey
    )
    assert last.complete
    assert last.filekey == first.filekey

    assembled = await assembler.assemble(last.filekey, filename="Notes.txt")

    assert assembled.filekey != first.filekey
    assert not assembled.is_partial
    assert assembled.size == 3000
    assert Path(assembled.storage_path).read_bytes() == b"a" * 2000 + b"b" * 1000


async def test_offset_mismatch_reports_expected_offset(db, user, tmp_file, small_chunks):
    assembler = ChunkAssembler(db, user, policy_checks=[])
    first = await assembler.add_chunk(tmp_file(b"a" * 1000, "c0"), filename="Notes.txt", file_size=3000, offset=0)

    with pytest.raises(ConsistencyError) as excinfo:
        await assembler.add_chunk(
            tmp_file(b"b" * 1000, "c1"), filename="Notes.txt", file_size=3000, offset=2000, filekey=first.filekey
        )

    assert excinfo.value.code == "stashfailed"
    assert excinfo.value.data == {"offset": 1000}
    record = await db.get(StashedFile, first.filekey, populate_existing=True)
    assert record.chunk_count == 1


async def test_filekey_rules(db, user, tmp_file, small_chunks):
    assembler = ChunkAssembler(db, user, policy_checks=[])

    with pytest.raises(ClientError) as with_key:
        await assembler.add_chunk(
            tmp_file(b"a" * 1000), filename="Notes.txt", file_size=3000, offset=0, filekey="abc.def.txt"
        )
    assert with_key.value.code == "badparams"

    with pytest.raises(ClientError) as without_key:
        await assembler.add_chunk(tmp_file(b"a" * 1000), filename="Notes.txt", file_size=3000, offset=1000)
    assert without_key.value.code == "badparams"


async def test_failed_assembly_is_recorded(db, user, tmp_file, small_chunks):
    assembler = ChunkAssembler(db, user, policy_checks=[])
    # Passes the name check but not the PNG signature check.
    outcome = await assembler.add_chunk(tmp_file(b"x" * 1500), filename="Fake.png", file_size=1500, offset=0)
    assert outcome.complete

    with pytest.raises(ApiError) as excinfo:
        await assembler.assemble(outcome.filekey, filename="Fake.png")

    assert excinfo.value.code == "stashfailed"
    assert excinfo.value.data["details"] == ["verification-error"]
    session = await stash.get_session_status(db, user, outcome.filekey)
    assert session.result == UploadResult.FAILURE
    assert session.stage == UploadStage.ASSEMBLING
    assert session.status["verification"]["status"] == "verification-error"
