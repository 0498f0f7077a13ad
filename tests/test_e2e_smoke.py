"""End-to-end smoke tests through `main` with real images on disk.

These exercise discovery, classification, both stages, renaming and temp
cleanup. The waifu2x-caffe executable is replaced by a fake that writes a
small PNG, since the real binary needs a CUDA GPU.
"""

import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from PIL import Image

import superscale_images

FAKE_TOOLCHAIN = superscale_images.Toolchain(
    waifu2x_binary=Path("/opt/waifu2x/waifu2x-caffe-cui"),
    model_dir=Path("/opt/waifu2x/models/upconv_7_anime_style_art_rgb"),
)


class TestE2ESmoke(unittest.TestCase):
    """End-to-end run over a small, mixed-resolution source folder."""

    def setUp(self):
        self._temp_dir = tempfile.TemporaryDirectory()
        self.work_dir = Path(self._temp_dir.name)
        self.source_dir = self.work_dir / "S&R"
        self.source_dir.mkdir()
        Image.new("RGB", (500, 400), (255, 255, 255)).save(self.source_dir / "a☆.png")
        Image.new("1", (6000, 5000)).save(self.source_dir / "b☆.png")
        Image.new("RGB", (50, 50)).save(self.source_dir / "c☆.png")
        self.calls = []

    def tearDown(self):
        self._temp_dir.cleanup()

    def fake_invoke(self, chain, input_path, output_path, **kwargs):
        self.calls.append(
            (
                Path(input_path).name,
                kwargs["magnification"],
                kwargs["batch_size"],
                kwargs["split_size"],
            )
        )
        Image.new("RGB", (24, 24), (0, 128, 255)).save(output_path, compress_level=0)
        return 0

    def run_main(self, extra_args=()):
        argv = [
            "--work-dir", str(self.work_dir),
            "--settings", str(self.work_dir / "settings.json"),
            "--workers", "2",
            "--poll-interval", "0.01",
            *extra_args,
        ]
        with mock.patch(
            "superscale_images.resolve_toolchain", return_value=FAKE_TOOLCHAIN
        ), mock.patch(
            "superscale_images.invoke_upscaler", side_effect=self.fake_invoke
        ), mock.patch("superscale_images.start_cancel_listener"), mock.patch(
            "sys.stdout", new_callable=io.StringIO
        ) as stdout_mock, mock.patch("sys.stderr", new_callable=io.StringIO):
            rc = superscale_images.main(argv)
        return rc, stdout_mock.getvalue()

    def test_mixed_folder_is_upscaled_optimized_and_marked(self):
        rc, output = self.run_main()

        self.assertEqual(rc, 0)
        self.assertIn("Complete!", output)
        self.assertEqual(
            self.calls,
            [
                ("a☆.png", 1, 6, 128),
                ("a☆.pass1.png", 2, 6, 128),
                ("b☆.png", 1, 4, 256),
                ("b☆.pass1.png", 2, 4, 256),
            ],
        )
        self.assertTrue((self.work_dir / "a★.png").is_file())
        self.assertTrue((self.work_dir / "b★.png").is_file())
        self.assertFalse((self.work_dir / "a☆.png").exists())
        self.assertFalse((self.work_dir / "c★.png").exists())
        self.assertFalse((self.work_dir / "c☆.png").exists())
        self.assertTrue((self.source_dir / "c☆.png").is_file())
        self.assertFalse((self.work_dir / "temp").exists())

        with Image.open(self.work_dir / "a★.png") as image:
            self.assertEqual(image.format, "PNG")
            self.assertEqual(image.getpixel((0, 0)), (0, 128, 255))

    def test_keep_temp_leaves_temp_folder(self):
        rc, output = self.run_main(["--keep-temp"])

        self.assertEqual(rc, 0)
        self.assertIn("Temp folder kept at:", output)
        self.assertTrue((self.work_dir / "temp").is_dir())
        self.assertEqual(list((self.work_dir / "temp").iterdir()), [])

    def test_dry_run_invokes_nothing_and_writes_nothing(self):
        rc, output = self.run_main(["--dry-run"])

        self.assertEqual(rc, 0)
        self.assertIn("*** DRY RUN MODE ***", output)
        self.assertIn("[DRY RUN]", output)
        self.assertEqual(self.calls, [])
        self.assertEqual(list(self.work_dir.glob("*.png")), [])

    def test_user_cancel_exits_zero_after_current_image(self):
        signals = []

        def capture_listener(cancel, cancel_key):
            signals.append(cancel)

        def cancelling_invoke(chain, input_path, output_path, **kwargs):
            signals[0].cancel()
            return self.fake_invoke(chain, input_path, output_path, **kwargs)

        with mock.patch(
            "superscale_images.resolve_toolchain", return_value=FAKE_TOOLCHAIN
        ), mock.patch(
            "superscale_images.invoke_upscaler", side_effect=cancelling_invoke
        ), mock.patch(
            "superscale_images.start_cancel_listener", side_effect=capture_listener
        ), mock.patch(
            "sys.stdout", new_callable=io.StringIO
        ) as stdout_mock, mock.patch("sys.stderr", new_callable=io.StringIO):
            rc = superscale_images.main([
                "--work-dir", str(self.work_dir),
                "--settings", str(self.work_dir / "settings.json"),
                "--workers", "1",
                "--poll-interval", "0.01",
            ])

        self.assertEqual(rc, 0)
        self.assertIn("Optimizer pass cancelled.", stdout_mock.getvalue())
        self.assertEqual([call[0] for call in self.calls], ["a☆.png", "a☆.pass1.png"])
        self.assertFalse(any(self.work_dir.glob("b*.png")))
        self.assertTrue((self.source_dir / "b☆.png").is_file())
        self.assertFalse((self.work_dir / "temp").exists())

    def test_exhausted_retry_ladder_exits_non_zero(self):
        with mock.patch(
            "superscale_images.resolve_toolchain", return_value=FAKE_TOOLCHAIN
        ), mock.patch(
            "superscale_images.invoke_upscaler", return_value=-1
        ), mock.patch("superscale_images.start_cancel_listener"), mock.patch(
            "sys.stdout", new_callable=io.StringIO
        ), mock.patch("sys.stderr", new_callable=io.StringIO) as stderr_mock:
            rc = superscale_images.main([
                "--work-dir", str(self.work_dir),
                "--settings", str(self.work_dir / "settings.json"),
                "--workers", "1",
                "--poll-interval", "0.01",
            ])

        self.assertEqual(rc, 1)
        self.assertIn("Could not convert a☆.png", stderr_mock.getvalue())
        self.assertFalse((self.work_dir / "temp").exists())


if __name__ == "__main__":
    unittest.main()
