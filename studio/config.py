"""
Centralized configuration constants for the product studio pipeline.

Ground rules:
- Local pixel math is deterministic (no randomness, no model inference).
- Every buffer that leaves a stage is encoded losslessly (PNG).
"""

# Mask finishing: pixels whose R, G and B are all below this become transparent.
NEAR_BLACK_THRESHOLD = 50

# Reflection synthesis.
REFLECTION_HEIGHT_FRACTION = 0.6
# (position along reflection height, opacity) stops; top must never exceed 0.5.
REFLECTION_FADE_STOPS = (
    (0.0, 0.50),
    (0.2, 0.35),
    (0.5, 0.15),
    (0.8, 0.05),
    (1.0, 0.00),
)
REFLECTION_BRIGHTNESS = 1.3
REFLECTION_CONTRAST = 1.7
REFLECTION_SATURATION = 1.6
REFLECTION_OPACITY = 0.9
REFLECTION_BLUR_PX = 4.0

# Depth of field: uniform backdrop blur drawn before reflection/subject.
DOF_BLUR_SIGMA = 12.0

# Workflow dispatch: items in flight per group against an external service.
DISPATCH_GROUP_SIZE = 3

# Compression stage (uploads above either limit go through Compressing).
COMPRESS_MAX_BYTES = 5 * 1024 * 1024
COMPRESS_MAX_DIMENSION = 2048
COMPRESS_QUALITY_START = 1.0
COMPRESS_QUALITY_STEP = 0.02
COMPRESS_QUALITY_FLOOR = 0.1

# Pre-cut detection: sample grid edge and the share of non-opaque samples.
TRANSPARENCY_SAMPLE_SIZE = 200
TRANSPARENCY_MIN_RATIO = 0.01

GEMINI_MASK_MODEL = "gemini-2.5-flash-image-preview"
GEMINI_ENHANCE_MODEL = "gemini-2.5-flash-image-preview"

# Cloudinary "Marble Studio Gloss" canvas used for instant previews.
PREVIEW_CANVAS_W = 2048
PREVIEW_CANVAS_H = 2048
PREVIEW_FORMAT = "png"
PREVIEW_BLUR_STRENGTH = 2000
DROP_SHADOW_EFFECT = "e_dropshadow:azimuth_0;elevation_90;spread_5"

# Versioned prompts (keep changes explicit + centralized).
MASK_PROMPT = """You are a precision image segmentation tool.
Create a pixel-perfect segmentation mask of the main product in this image.

Rules:
1. The product must be solid WHITE (#FFFFFF); everything else solid BLACK (#000000).
2. The output mask image MUST have the exact same dimensions as the input image.
3. No gradients, no shadows, no text.
4. Edges must be sharp and follow the product's outline precisely.
"""

ENHANCE_PROMPT = """You are a professional photo editing AI. Enhance the provided product
image with professional finishing touches.

CRITICAL REQUIREMENTS:
1. PRESERVE the subject completely - do not alter, move, or change the product in any way
2. PRESERVE the overall composition and placement (the second image shows the product alone)
3. Only enhance the lighting, shadows, and visual polish

ENHANCEMENTS TO APPLY:
- Realistic contact shadows beneath the subject that match the lighting
- Natural, professional lighting and color balance
- Smooth any harsh edges or artifacts

Return ONLY the enhanced image.
"""
