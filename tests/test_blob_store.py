import io

import pytest
from botocore.exceptions import ClientError

from core.config import Settings
from models.image import UploadRequest
from services.blob_store import LocalBlobStore, S3BlobStore, create_blob_store
from services.errors import ErrorKind, SourceFetchError, UploadError


class FakeS3Client:
    def __init__(self, put_status=200):
        self.objects = {}
        self.put_status = put_status

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def put_object(self, Bucket, Key, Body, ContentLength, ContentType):
        self.objects[Key] = Body.read()
        return {"ResponseMetadata": {"HTTPStatusCode": self.put_status}}


@pytest.fixture
def tmp_file(tmp_path):
    path = tmp_path / "version.bin"
    path.write_bytes(b"version-bytes")
    return path


async def test_local_round_trip(tmp_path, tmp_file):
    blobs = LocalBlobStore(str(tmp_path / "root"))

    await blobs.upload(UploadRequest(source=str(tmp_file), destination="d/abc.jpg",
                                     size=13, mime_type="image/jpeg"))

    assert await blobs.get_file("d/abc.jpg") == b"version-bytes"


async def test_local_missing_file(tmp_path):
    with pytest.raises(SourceFetchError) as info:
        await LocalBlobStore(str(tmp_path)).get_file("nope.jpg")

    assert info.value.kind is ErrorKind.NO_SUCH_SOURCE


async def test_local_rejects_paths_outside_root(tmp_path, tmp_file):
    blobs = LocalBlobStore(str(tmp_path / "root"))

    with pytest.raises(SourceFetchError):
        await blobs.get_file("../version.bin")
    with pytest.raises(UploadError):
        await blobs.upload(UploadRequest(source=str(tmp_file), destination="../../x.jpg",
                                         size=13, mime_type="image/jpeg"))


async def test_s3_get_and_upload(tmp_file):
    client = FakeS3Client()
    client.objects["photos/cat.jpg"] = b"cat"
    blobs = S3BlobStore("bucket", client=client)

    assert await blobs.get_file("photos/cat.jpg") == b"cat"
    await blobs.upload(UploadRequest(source=str(tmp_file), destination="d/x.jpg",
                                     size=13, mime_type="image/jpeg"))
    assert client.objects["d/x.jpg"] == b"version-bytes"


async def test_s3_missing_key_is_no_such_source():
    blobs = S3BlobStore("bucket", client=FakeS3Client())

    with pytest.raises(SourceFetchError):
        await blobs.get_file("photos/none.jpg")


async def test_s3_non_success_status_is_upload_error(tmp_file):
    blobs = S3BlobStore("bucket", client=FakeS3Client(put_status=503))

    with pytest.raises(UploadError) as info:
        await blobs.upload(UploadRequest(source=str(tmp_file), destination="d/x.jpg",
                                         size=13, mime_type="image/jpeg"))

    assert info.value.status_code == 503
    assert info.value.kind is ErrorKind.UPLOAD_FAILED


def test_factory_selects_backend(tmp_path):
    local = create_blob_store(Settings(blob_backend="local", local_blob_root=str(tmp_path)))
    s3 = create_blob_store(Settings(blob_backend="s3", s3_bucket="images"), client=FakeS3Client())

    assert isinstance(local, LocalBlobStore)
    assert isinstance(s3, S3BlobStore)
    assert s3.bucket == "images"
