import base64
import hashlib
import unittest

from agent_transcripts.blobs import BlobStore, is_image_placeholder, strip_image_placeholders


class BlobStoreTests(unittest.TestCase):
    def test_identical_payloads_are_stored_once(self) -> None:
        store = BlobStore()
        payload = base64.b64encode(b"\x89PNG fake image").decode("ascii")

        first = store.add_base64(payload, "image/png")
        second = store.add_data_url(f"data:image/png;base64,{payload}")

        assert first is not None and second is not None
        self.assertEqual(first.sha256, hashlib.sha256(b"\x89PNG fake image").hexdigest())
        self.assertEqual(first, second)
        self.assertEqual(len(store), 1)
        self.assertEqual(store.blobs[first.sha256].data, b"\x89PNG fake image")
        self.assertEqual(store.blobs[first.sha256].mediaType, "image/png")

    def test_missing_media_type_defaults(self) -> None:
        ref = BlobStore().add(b"bytes", None)
        self.assertEqual(ref.mediaType, "image/unknown")

    def test_non_data_urls_are_not_extracted(self) -> None:
        store = BlobStore()
        self.assertIsNone(store.add_data_url("https://example.com/cat.png"))
        self.assertIsNone(store.add_data_url(None))
        self.assertIsNone(store.add_base64("", "image/png"))
        self.assertEqual(len(store), 0)

    def test_placeholders_are_stripped(self) -> None:
        self.assertEqual(
            strip_image_placeholders("see <image name=[Image #1]></image> and [Image #2] here").split(),
            ["see", "and", "here"],
        )
        self.assertTrue(is_image_placeholder("<image name=[Image #3]>"))
        self.assertFalse(is_image_placeholder("an image of a cat"))


if __name__ == "__main__":
    unittest.main()
