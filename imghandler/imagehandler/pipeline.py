import dataclasses
import math
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional, Self, Sequence

from pyvips import Error, Extend, Image  # type: ignore

from imghandler.imagehandler.detection import Detector
from imghandler.imagehandler.edits import (
    Blur,
    ContentModeration,
    Crop,
    Edit,
    Fit,
    Flip,
    Flop,
    Grayscale,
    Negate,
    Overlay,
    Resize,
    Rotate,
    Sharpen,
    SmartCrop,
    parse_position
)
from imghandler.imagehandler.errors import (
    ImageHandlerError,
    OverlayTooLargeError,
    is_overlay_codec_error
)
from imghandler.imagehandler.request import (
    ImageFormat,
    ImageRequest,
    ObjectStore,
    StoredObject
)
from imghandler.typing import S3Key

DEFAULT_QUALITY = 80
OVERLAY_FETCH_TIMEOUT = 10.0


def resolve_overlay_offset(value: Optional[str | float], base: int, overlay: int) -> float:
  """Resolves one axis of an overlay position to a pixel offset on the base.

  ``"50"`` is 50 pixels from the near edge and ``"50p"`` is 50 % of the base.
  A negative value is measured from the far edge, so the overlay is pulled
  back by its own size. Returns NaN when there is no explicit position.
  """
  if value is None:
    return math.nan
  parsed = parse_position(value)
  if parsed is None:
    return math.nan

  n, percent = parsed
  if percent:
    if 0 <= n:
      return base * n / 100
    return base + base * n / 100 - overlay

  if 0 <= n:
    return n
  return base + n - overlay


class AcceptHeader:
  types: dict[ImageFormat, bool]

  def __init__(self, types: dict[ImageFormat, bool]):
    self.types = types

  @classmethod
  def from_str(cls, accept_header: str) -> Self:
    return cls({
        ImageFormat.AVIF: 'image/avif' in accept_header,
        ImageFormat.WEBP: 'image/webp' in accept_header,
    })

  def supports(self, image_type: ImageFormat) -> bool:
    return self.types.get(image_type, False)


@dataclasses.dataclass(frozen=True)
class PipelineResult:
  body: bytes
  content_type: str
  width: Optional[int]
  height: Optional[int]
  vips_us: Optional[int]


def background_for(image: Image, color: Optional[Sequence[float]]) -> list[float]:
  bands = image.bands
  if color is None:
    return [0.0] * bands
  c = list(color)
  if bands <= len(c):
    return c[:bands]
  # Missing alpha is opaque.
  return c + [255.0] * (bands - len(c))


def resize_image(image: Image, edit: Resize) -> Image:
  width = image.width
  height = image.height

  if edit.width is None or edit.height is None:
    if edit.width is not None:
      return image.resize(edit.width / width)
    assert edit.height is not None
    return image.resize(edit.height / height)

  hscale = edit.width / width
  vscale = edit.height / height

  match edit.fit:
    case Fit.FILL:
      return image.resize(hscale, vscale=vscale)
    case Fit.INSIDE:
      return image.resize(min(hscale, vscale))
    case Fit.OUTSIDE:
      return image.resize(max(hscale, vscale))
    case Fit.COVER:
      resized = image.resize(max(hscale, vscale))
      w = min(edit.width, resized.width)
      h = min(edit.height, resized.height)
      return resized.extract_area((resized.width - w) // 2, (resized.height - h) // 2, w, h)
    case Fit.CONTAIN:
      resized = image.resize(min(hscale, vscale))
      return resized.embed(
          (edit.width - resized.width) // 2, (edit.height - resized.height) // 2,
          edit.width,
          edit.height,
          extend=Extend.BACKGROUND,
          background=background_for(resized, edit.background))
    case _:
      raise Exception('system error')


def crop_image(image: Image, edit: Crop) -> Image:
  if image.width < edit.left + edit.width or image.height < edit.top + edit.height:
    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST, 'Crop::AreaOutOfBounds',
        f'The crop area {edit.width}x{edit.height}+{edit.left}+{edit.top} is outside the image '
        f'{image.width}x{image.height}.')
  return image.extract_area(edit.left, edit.top, edit.width, edit.height)


def rotate_image(image: Image, edit: Rotate) -> Image:
  if edit.angle is None:
    return image.autorot()

  angle = edit.angle % 360
  if angle % 90 == 0:
    return image.rot(f'd{int(angle)}')
  return image.rotate(angle, background=background_for(image, None))


def negate_image(image: Image) -> Image:
  if not image.hasalpha():
    return image.invert()
  color = image.extract_band(0, n=image.bands - 1).invert()
  return color.bandjoin(image.extract_band(image.bands - 1))


def set_opacity(image: Image, alpha: float) -> Image:
  """Applies ``alpha`` percent of transparency on top of the image's own."""
  if not image.hasalpha():
    image = image.addalpha()
  color = image.extract_band(0, n=image.bands - 1)
  a = image.extract_band(image.bands - 1) * (1 - alpha / 100)
  return color.bandjoin(a.cast(image.format))


def to_detectable(image: Image) -> bytes:
  # Rekognition takes JPEG or PNG only.
  return image.write_to_buffer('.png')


class EditPipeline:

  def __init__(
      self,
      log: Logger,
      store: ObjectStore,
      detector: Detector,
      auto_formats: list[ImageFormat],
      default_quality: int = DEFAULT_QUALITY,
      overlay_fetch_timeout: float = OVERLAY_FETCH_TIMEOUT,
  ):
    self.log = log
    self.store = store
    self.detector = detector
    self.auto_formats = auto_formats
    self.default_quality = default_quality
    self.overlay_fetch_timeout = overlay_fetch_timeout

  def select_format(self, request: ImageRequest, accept: AcceptHeader) -> Optional[ImageFormat]:
    if request.parsed.output_format is not None:
      return request.parsed.output_format

    for f in self.auto_formats:
      if accept.supports(f):
        return f

    return None

  def process(
      self,
      request: ImageRequest,
      accept: AcceptHeader,
      overlay: Optional['Future[StoredObject]'] = None,
  ) -> PipelineResult:
    edits = request.parsed.edits
    output_format = self.select_format(request, accept)

    if not edits and (output_format is None or
                      output_format.content_type() == request.content_type):
      return PipelineResult(
          body=request.original_image,
          content_type=request.content_type,
          width=None,
          height=None,
          vips_us=None)

    start_ns = time.time_ns()

    try:
      image = Image.new_from_buffer(request.original_image, '')
      if output_format is None:
        output_format = (
            ImageFormat.maybe_from_loader(image.get('vips-loader'))
            or ImageFormat.maybe_from_content_type(request.content_type) or ImageFormat.JPEG)

      image = self.apply_edits(image, edits.edits, overlay)
      body = self.encode(image, output_format, request.parsed.quality)
    except Error as e:
      if is_overlay_codec_error(e):
        raise OverlayTooLargeError()
      raise ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, 'ImageProcessingError', str(e))

    vips_us = (time.time_ns() - start_ns) // 1000

    return PipelineResult(
        body=body,
        content_type=output_format.content_type(),
        width=image.width,
        height=image.height,
        vips_us=vips_us)

  def apply_edits(
      self,
      image: Image,
      edits: Sequence[Edit],
      overlay: Optional['Future[StoredObject]'],
  ) -> Image:
    # Edits arrive in evaluation order.
    for edit in edits:
      image = self.apply_edit(image, edit, overlay)
    return image

  def apply_edit(
      self,
      image: Image,
      edit: Edit,
      overlay: Optional['Future[StoredObject]'],
  ) -> Image:
    match edit:
      case Crop():
        return crop_image(image, edit)
      case Resize():
        return resize_image(image, edit)
      case Rotate():
        return rotate_image(image, edit)
      case Flip():
        return image.flip('vertical')
      case Flop():
        return image.flip('horizontal')
      case Overlay():
        return self.composite_overlay(image, edit, self.fetch_overlay(edit, overlay))
      case SmartCrop():
        return self.smart_crop(image, edit)
      case ContentModeration():
        return self.moderate(image, edit)
      case Grayscale():
        return image.colourspace('b-w')
      case Negate():
        return negate_image(image)
      case Blur():
        return image.gaussblur(edit.sigma)
      case Sharpen():
        if edit.sigma is None:
          return image.sharpen()
        return image.sharpen(sigma=edit.sigma)
      case _:
        raise Exception('system error')

  def fetch_overlay(self, edit: Overlay, overlay: Optional['Future[StoredObject]']) -> bytes:
    if overlay is None:
      return self.store.get(edit.bucket, S3Key(edit.key)).body

    try:
      return overlay.result(timeout=self.overlay_fetch_timeout).body
    except FutureTimeoutError:
      overlay.cancel()
      raise ImageHandlerError(
          HTTPStatus.GATEWAY_TIMEOUT, 'OverlayTimeout', f'timed out fetching {edit.key}')

  def get_overlay_image(self, base: Image, edit: Overlay, data: bytes) -> Image:
    overlay = Image.new_from_buffer(data, '')

    if edit.w_ratio is not None or edit.h_ratio is not None:
      width = None if edit.w_ratio is None else max(1, math.floor(base.width * edit.w_ratio / 100))
      height = None if edit.h_ratio is None else max(
          1, math.floor(base.height * edit.h_ratio / 100))
      overlay = resize_image(overlay, Resize(width, height))

    if edit.alpha is not None:
      overlay = set_opacity(overlay, edit.alpha)

    return overlay

  def composite_overlay(self, base: Image, edit: Overlay, data: bytes) -> Image:
    overlay = self.get_overlay_image(base, edit, data)

    if base.width < overlay.width or base.height < overlay.height:
      self.log.debug({
          'message': 'overlay too large',
          'base': (base.width, base.height),
          'overlay': (overlay.width, overlay.height),
      })
      raise OverlayTooLargeError()

    left = resolve_overlay_offset(edit.left, base.width, overlay.width)
    top = resolve_overlay_offset(edit.top, base.height, overlay.height)

    # Unset axes are centred.
    x = (base.width - overlay.width) // 2 if math.isnan(left) else math.floor(left)
    y = (base.height - overlay.height) // 2 if math.isnan(top) else math.floor(top)

    if not overlay.hasalpha():
      overlay = overlay.addalpha()

    composed = (base if base.hasalpha() else base.addalpha()).composite2(overlay, 'over', x=x, y=y)
    if not base.hasalpha():
      composed = composed.flatten()
    if composed.format != base.format:
      composed = composed.cast(base.format)

    return composed

  def smart_crop(self, image: Image, edit: SmartCrop) -> Image:
    boxes = self.detector.detect_faces(to_detectable(image))
    if len(boxes) == 0:
      self.log.debug({'message': 'no faces detected'})
      return image

    if len(boxes) <= edit.face_index:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'SmartCrop::FaceIndexOutOfRange',
          'You have provided a FaceIndex value that exceeds the length of the zero-based '
          'detectedFaces array. Please specify a value that is in-range.')

    box = boxes[edit.face_index]
    left = max(0, math.floor(box.left * image.width) - edit.padding)
    top = max(0, math.floor(box.top * image.height) - edit.padding)
    right = min(image.width, math.ceil((box.left + box.width) * image.width) + edit.padding)
    bottom = min(image.height, math.ceil((box.top + box.height) * image.height) + edit.padding)

    if right <= left or bottom <= top:
      return image

    return image.extract_area(left, top, right - left, bottom - top)

  def moderate(self, image: Image, edit: ContentModeration) -> Image:
    labels = self.detector.detect_moderation_labels(to_detectable(image), edit.min_confidence)

    targets = set(edit.labels)
    matched = [
        label for label in labels
        if len(targets) == 0 or label.name in targets or label.parent_name in targets
    ]
    if len(matched) == 0:
      return image

    self.log.debug({'message': 'moderation labels found', 'labels': [m.name for m in matched]})
    return image.gaussblur(edit.blur)

  def encode(self, image: Image, fmt: ImageFormat, quality: Optional[int]) -> bytes:
    if fmt.is_lossy():
      q: Any = self.default_quality if quality is None else quality
      return image.write_to_buffer(fmt.extension(), Q=q)
    return image.write_to_buffer(fmt.extension())
