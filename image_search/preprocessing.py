"""
Image preprocessing pipeline for feature extraction.

Turns decoded pixel arrays, encoded image bytes or existing tensors into
the [1, size, size, 3] float tensor the backbone expects: bilinear
resize to the square input size, then scaling from [0, 255] to [-1, 1]
(MobileNetV2 training normalization).
"""

import logging
from typing import Optional, Tuple

import cv2
import numpy as np
import tensorflow as tf

from .config import INPUT_SIZE
from .errors import UnsupportedFormatError
from .tensor_scope import TensorScope

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Ensure image is uint8 RGB format."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 1:
        image_np = cv2.cvtColor(image_np[:, :, 0], cv2.COLOR_GRAY2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)

    if image_np.ndim != 3 or image_np.shape[2] != 3:
        raise ValueError(f"Expected an HxW, HxWx3 or HxWx4 image, got shape {image_np.shape}")
    return image_np


def detect_image_format(buffer: bytes) -> Optional[str]:
    """Identify JPEG, PNG or WEBP from the leading magic bytes."""
    if len(buffer) >= 2 and buffer[0] == 0xFF and buffer[1] == 0xD8:
        return "jpeg"
    if len(buffer) >= 4 and buffer[:4] == b"\x89PNG":
        return "png"
    if len(buffer) >= 12 and buffer[8:12] == b"WEBP":
        return "webp"
    return None


def decode_image_bytes(buffer: bytes) -> np.ndarray:
    """
    Decode encoded image bytes into an RGB uint8 array.

    Raises:
        UnsupportedFormatError: If the signature is unknown or the codec
            cannot decode the data.
    """
    fmt = detect_image_format(buffer)
    if fmt is None:
        raise UnsupportedFormatError("Unsupported image format")

    decoded = cv2.imdecode(np.frombuffer(buffer, dtype=np.uint8), cv2.IMREAD_COLOR)
    if decoded is None:
        raise UnsupportedFormatError(f"Could not decode {fmt} image data")

    return cv2.cvtColor(decoded, cv2.COLOR_BGR2RGB)


def _tensor_to_rgb(tensor, scope: TensorScope):
    tensor = scope.track(tf.cast(tensor, tf.float32))
    if tensor.shape.rank == 4:
        if tensor.shape[0] != 1:
            raise ValueError(f"Expected a batch of one image, got shape {tensor.shape}")
        tensor = scope.track(tf.squeeze(tensor, axis=0))
    if tensor.shape.rank == 2:
        tensor = scope.track(tf.expand_dims(tensor, -1))
    if tensor.shape.rank != 3:
        raise ValueError(f"Expected a 2-D, 3-D or 4-D image tensor, got shape {tensor.shape}")

    channels = tensor.shape[-1]
    if channels == 1:
        tensor = scope.track(tf.image.grayscale_to_rgb(tensor))
    elif channels == 4:
        tensor = scope.track(tensor[:, :, :3])
    elif channels != 3:
        raise ValueError(f"Expected 1, 3 or 4 channels, got {channels}")
    return tensor


def preprocess(image, input_size: int = INPUT_SIZE):
    """
    Normalize an image into the backbone's input tensor.

    Args:
        image: Decoded pixel array (uint8, or float in [0, 1]) or a
            tensor of pixel values in [0, 255], optionally batched.
        input_size: Side length of the backbone's square input.

    Returns:
        Float32 tensor of shape [1, input_size, input_size, 3] with
        values in [-1, 1].
    """
    with TensorScope("preprocess") as scope:
        if tf.is_tensor(image):
            tensor = _tensor_to_rgb(image, scope)
        else:
            pixels = normalize_image(np.asarray(image))
            tensor = scope.track(tf.convert_to_tensor(pixels, dtype=tf.float32))

        resized = scope.track(
            tf.image.resize(tensor, [input_size, input_size], method="bilinear")
        )
        scaled = scope.track(resized / 127.5 - 1.0)
        batched = scope.track(tf.expand_dims(scaled, 0))
        return scope.keep(batched)


def preprocess_from_bytes(buffer: bytes, input_size: int = INPUT_SIZE):
    """
    Decode JPEG/PNG/WEBP bytes and preprocess them.

    Raises:
        UnsupportedFormatError: If the bytes are not a decodable image.
    """
    pixels = decode_image_bytes(buffer)
    logger.debug(f"Decoded image {pixels.shape[1]}x{pixels.shape[0]}")
    return preprocess(pixels, input_size)


def encode_image(image) -> Tuple[bytes, str]:
    """
    Produce upload-ready bytes and a content type for an image.

    Encoded bytes are passed through after a signature check; pixel arrays
    and tensors are JPEG-encoded.
    """
    if isinstance(image, (bytes, bytearray, memoryview)):
        data = bytes(image)
        fmt = detect_image_format(data)
        if fmt is None:
            raise UnsupportedFormatError("Unsupported image format")
        return data, CONTENT_TYPES[fmt]

    pixels = image.numpy() if tf.is_tensor(image) else np.asarray(image)
    if pixels.ndim == 4 and pixels.shape[0] == 1:
        pixels = pixels[0]
    pixels = normalize_image(pixels)

    ok, encoded = cv2.imencode(".jpg", cv2.cvtColor(pixels, cv2.COLOR_RGB2BGR))
    if not ok:
        raise UnsupportedFormatError("Could not encode image as JPEG")
    return encoded.tobytes(), CONTENT_TYPES["jpeg"]
