import json
from http import HTTPStatus
from typing import Tuple

from imghandler.typing import ErrorBody

GENERIC_MESSAGE = 'Internal error. Please contact the system administrator.'
OVERLAY_MESSAGE = 'Image to overlay must have same dimensions or smaller'

# Codec wording for an overlay larger than its base.
CODEC_OVERLAY_MESSAGES = [
    'Image to composite must have same dimensions or smaller',
    'incompatible overlay dimensions',
]


class ImageHandlerError(Exception):

  def __init__(self, status: int, code: str, message: str):
    super().__init__(message)
    self.status = status
    self.code = code
    self.message = message

  def to_body(self) -> ErrorBody:
    return {'status': self.status, 'code': self.code, 'message': self.message}


class OverlayTooLargeError(ImageHandlerError):

  def __init__(self) -> None:
    super().__init__(HTTPStatus.BAD_REQUEST, 'BadRequest', OVERLAY_MESSAGE)


def not_found(key: str) -> ImageHandlerError:
  return ImageHandlerError(
      HTTPStatus.NOT_FOUND, 'NoSuchKey',
      f'The image {key} does not exist or the request may not be base64 encoded properly.')


def json_dump(obj: ErrorBody) -> str:
  return json.dumps(obj, separators=(',', ':'), ensure_ascii=False)


def is_overlay_codec_error(e: Exception) -> bool:
  msg = str(e)
  return any(m in msg for m in CODEC_OVERLAY_MESSAGES)


def get_error_response(e: Exception) -> Tuple[int, str]:
  if isinstance(e, ImageHandlerError):
    if e.status < HTTPStatus.INTERNAL_SERVER_ERROR:
      return e.status, json_dump(e.to_body())
    return e.status, json_dump({
        'status': e.status,
        'code': 'InternalError',
        'message': GENERIC_MESSAGE,
    })

  if is_overlay_codec_error(e):
    return HTTPStatus.BAD_REQUEST, json_dump(OverlayTooLargeError().to_body())

  return HTTPStatus.INTERNAL_SERVER_ERROR, json_dump({
      'status': HTTPStatus.INTERNAL_SERVER_ERROR,
      'code': 'InternalError',
      'message': GENERIC_MESSAGE,
  })
