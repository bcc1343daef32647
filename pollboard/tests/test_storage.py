import unittest
from unittest import mock

from pollboard.storage import InMemoryStorageClient, S3StorageClient


class InMemoryStorageClientTests(unittest.TestCase):
    def test_upload_and_read(self):
        storage = InMemoryStorageClient()
        storage.upload_bytes("polls/1/qr.png", b"png", content_type="image/png")
        self.assertEqual(storage.get_bytes("polls/1/qr.png"), b"png")
        self.assertEqual(
            storage.presign_get("polls/1/qr.png", expires_in=60),
            "https://example.test/storage/polls/1/qr.png?op=get&expires=60",
        )
        with self.assertRaises(FileNotFoundError):
            storage.get_bytes("missing")


class S3StorageClientTests(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("pollboard.storage.boto3.client")
        self.boto_client = patcher.start()
        self.addCleanup(patcher.stop)
        self.s3 = self.boto_client.return_value
        self.storage = S3StorageClient(
            bucket="qr-codes",
            region="us-east-1",
            endpoint="https://storage.example.co/s3",
            access_key_id="key",
            secret_access_key="secret",
        )

    def test_client_configuration(self):
        kwargs = self.boto_client.call_args.kwargs
        self.assertEqual(self.boto_client.call_args.args, ("s3",))
        self.assertEqual(kwargs["endpoint_url"], "https://storage.example.co/s3")
        self.assertEqual(kwargs["region_name"], "us-east-1")

    def test_upload_bytes_sets_content_type(self):
        self.storage.upload_bytes("polls/1/qr.png", b"png", content_type="image/png")
        self.s3.put_object.assert_called_once_with(
            Bucket="qr-codes", Key="polls/1/qr.png", Body=b"png", ContentType="image/png"
        )

    def test_presign_get(self):
        self.s3.generate_presigned_url.return_value = "https://signed"
        self.assertEqual(self.storage.presign_get("polls/1/qr.png"), "https://signed")
        self.s3.generate_presigned_url.assert_called_once_with(
            ClientMethod="get_object",
            Params={"Bucket": "qr-codes", "Key": "polls/1/qr.png"},
            ExpiresIn=3600,
        )

    def test_get_bytes(self):
        self.s3.get_object.return_value = {"Body": mock.Mock(read=lambda: b"data")}
        self.assertEqual(self.storage.get_bytes("k"), b"data")


if __name__ == "__main__":
    unittest.main()
