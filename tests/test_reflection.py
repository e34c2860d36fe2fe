from __future__ import annotations

import unittest

import numpy as np

from studio.assembler import assemble
from studio.buffer import Dimensions, PixelBuffer, Rect
from studio.contracts import Placement
from studio.placement import resolve
from studio.reflection import ReflectionOptions, adjust_photometry, fade_profile, synthesize


def _opaque_subject(w: int, h: int) -> PixelBuffer:
    arr = np.zeros((h, w, 4), dtype=np.uint8)
    arr[..., 0] = 200
    arr[..., 1] = 120
    arr[..., 2] = 60
    arr[..., 3] = 255
    return PixelBuffer(arr)


class TestReflection(unittest.TestCase):
    def test_containment(self):
        rect = Rect(x=10, y=10, width=40, height=20)
        layer = synthesize(_opaque_subject(40, 20), rect, Dimensions(100, 100))
        self.assertEqual(layer.size, Dimensions(100, 100))

        rows, cols = np.nonzero(layer.alpha)
        self.assertGreater(rows.size, 0)
        self.assertGreaterEqual(rows.min(), 30)  # starts right below the subject
        self.assertLess(rows.max(), 30 + 12)  # 60% of the subject height
        self.assertGreaterEqual(cols.min(), 10)
        self.assertLess(cols.max(), 50)

    def test_opacity_cap(self):
        rect = Rect(x=0, y=0, width=64, height=40)
        layer = synthesize(_opaque_subject(64, 40), rect, Dimensions(64, 80))
        self.assertLessEqual(int(layer.alpha.max()), int(0.5 * 0.9 * 255))

    def test_fades_toward_bottom(self):
        rect = Rect(x=0, y=0, width=50, height=50)
        layer = synthesize(_opaque_subject(50, 50), rect, Dimensions(50, 100))
        col = layer.alpha[50:80, 25].astype(int)
        self.assertGreater(col[2], col[-3])

    def test_off_canvas_band_is_transparent(self):
        rect = Rect(x=10, y=95, width=40, height=20)
        layer = synthesize(_opaque_subject(40, 20), rect, Dimensions(100, 100))
        self.assertEqual(int(layer.alpha.max()), 0)

    def test_fade_profile_stops(self):
        profile = fade_profile(11)
        self.assertAlmostEqual(float(profile[0]), 0.5, places=5)
        self.assertAlmostEqual(float(profile[-1]), 0.0, places=5)
        self.assertTrue(np.all(np.diff(profile) <= 1e-6))

    def test_photometry_order(self):
        px = np.array([[[100.0, 100.0, 100.0, 255.0]]], dtype=np.float32)
        out = adjust_photometry(px)
        # brightness 130, contrast (130-128)*1.7+128, gray is unaffected by saturation
        np.testing.assert_allclose(out[0, 0, :3], [131.4, 131.4, 131.4], rtol=1e-4)
        self.assertAlmostEqual(float(out[0, 0, 3]), 229.5, places=3)

    def test_transparent_pixels_untouched_by_photometry(self):
        px = np.array([[[10.0, 20.0, 30.0, 0.0]]], dtype=np.float32)
        np.testing.assert_array_equal(adjust_photometry(px), px)

    def test_band_starts_on_row_after_fractional_subject(self):
        canvas = Dimensions(100, 100)
        subject = _opaque_subject(30, 20)
        subject_px = subject.writable_copy()
        subject_px[0, 0, 3] = 0
        subject = PixelBuffer(subject_px)
        rect = resolve(subject.size, canvas, Placement(x=0.5, y=0.5, scale=0.41))
        self.assertNotEqual(rect.y, round(rect.y))  # fractional on purpose
        x_px, y_px, w_px, h_px = rect.to_pixels()

        layer = synthesize(subject, rect, canvas)
        rows, cols = np.nonzero(layer.alpha)
        self.assertEqual(int(rows.min()), y_px + h_px)
        self.assertEqual(int(cols.min()), x_px)
        self.assertEqual(int(cols.max()), x_px + w_px - 1)

        out = assemble(PixelBuffer.blank(100, 100), subject, layer, rect)
        center = x_px + w_px // 2
        self.assertGreater(int(out.alpha[y_px + h_px - 1, center]), 0)
        self.assertGreater(int(out.alpha[y_px + h_px, center]), 0)

    def test_mirrors_bottom_of_subject_without_squashing(self):
        arr = np.zeros((100, 100, 4), dtype=np.uint8)
        arr[:50, :, 0] = 255  # red top half
        arr[50:, :, 2] = 255  # blue bottom half
        arr[..., 3] = 255
        layer = synthesize(PixelBuffer(arr), Rect(x=0, y=0, width=100, height=100), Dimensions(100, 200))

        # band row 30 mirrors subject row 69, well inside the blue half
        px = layer.pixels[130, 50]
        self.assertGreater(int(px[3]), 0)
        self.assertGreater(int(px[2]), 200)
        self.assertLess(int(px[0]), 50)

    def test_photometry_on_colored_pixel(self):
        px = np.array([[[100.0, 50.0, 200.0, 200.0]]], dtype=np.float32)
        out = adjust_photometry(px)
        # brightness: (130, 65, 255); contrast: (131.4, 20.9, 255)
        # luma 80.6269; saturation: (161.864, <0 -> 0, >255 -> 255)
        np.testing.assert_allclose(out[0, 0], [161.864, 0.0, 255.0, 180.0], atol=1e-2)

    def test_blur_spreads_alpha_across_band_edge(self):
        arr = np.zeros((20, 40, 4), dtype=np.uint8)
        arr[:, :20] = (200, 200, 200, 255)  # left half opaque, right half transparent
        subject = PixelBuffer(arr)
        rect = Rect(x=0, y=0, width=40, height=20)
        canvas = Dimensions(40, 40)

        sharp = synthesize(subject, rect, canvas, ReflectionOptions(blur_px=0.0))
        blurred = synthesize(subject, rect, canvas)

        self.assertEqual(int(sharp.alpha[21, 22]), 0)
        self.assertGreater(int(blurred.alpha[21, 22]), 0)

    def test_rejects_bright_fade(self):
        with self.assertRaises(ValueError):
            ReflectionOptions(fade_stops=((0.0, 0.8), (1.0, 0.0)))


if __name__ == "__main__":
    unittest.main()
