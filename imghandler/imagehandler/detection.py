import dataclasses
from http import HTTPStatus

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError
)
from mypy_boto3_rekognition.client import RekognitionClient

from imghandler.imagehandler.errors import ImageHandlerError


@dataclasses.dataclass(frozen=True)
class BoundingBox:
  # Ratios of the image width and height.
  left: float
  top: float
  width: float
  height: float


@dataclasses.dataclass(frozen=True)
class ModerationLabel:
  name: str
  parent_name: str
  confidence: float


class Detector:
  """Content-aware detection backed by Rekognition.

  The client is expected to carry its own connect/read timeouts; a timeout
  surfaces as a 504 rather than hanging the request.
  """

  def __init__(self, rekognition: RekognitionClient):
    self.rekognition = rekognition

  def detect_faces(self, image: bytes) -> list[BoundingBox]:
    try:
      res = self.rekognition.detect_faces(Image={'Bytes': image})
    except (ConnectTimeoutError, ReadTimeoutError) as e:
      raise ImageHandlerError(HTTPStatus.GATEWAY_TIMEOUT, 'DetectionTimeout', str(e))
    except (BotoCoreError, ClientError) as e:
      raise ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, 'DetectionError', str(e))

    boxes = []
    for face in res.get('FaceDetails', []):
      bb = face.get('BoundingBox', {})
      boxes.append(
          BoundingBox(
              left=bb.get('Left', 0.0),
              top=bb.get('Top', 0.0),
              width=bb.get('Width', 0.0),
              height=bb.get('Height', 0.0)))
    return boxes

  def detect_moderation_labels(self, image: bytes, min_confidence: float) -> list[ModerationLabel]:
    try:
      res = self.rekognition.detect_moderation_labels(
          Image={'Bytes': image}, MinConfidence=min_confidence)
    except (ConnectTimeoutError, ReadTimeoutError) as e:
      raise ImageHandlerError(HTTPStatus.GATEWAY_TIMEOUT, 'DetectionTimeout', str(e))
    except (BotoCoreError, ClientError) as e:
      raise ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, 'DetectionError', str(e))

    return [
        ModerationLabel(
            name=label.get('Name', ''),
            parent_name=label.get('ParentName', ''),
            confidence=label.get('Confidence', 0.0)) for label in res.get('ModerationLabels', [])
    ]
