from typing import Any, Literal, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class Header(TypedDict):
  key: NotRequired[ReadOnly[str]]
  value: str


class Request(TypedDict):
  method: ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH',
                           'CONNECT']]
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: ReadOnly[str]


class ViewerRequestConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['viewer-request']]
  requestId: ReadOnly[str]


class ViewerRequestRecord(TypedDict):
  config: ReadOnly[ViewerRequestConfig]
  request: Request


class ViewerRequestRecordContainer(TypedDict):
  cf: ViewerRequestRecord


class ViewerRequestEvent(TypedDict):
  Records: list[ViewerRequestRecordContainer]


class ResponseResult(TypedDict):
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]
  headers: NotRequired[dict[str, list[Header]]]
  status: str
  statusDescription: NotRequired[str]


class ImageHandlerEvent(TypedDict):
  # API Gateway v2 and function URLs send rawPath; REST APIs and ALB send path.
  rawPath: NotRequired[str]
  path: NotRequired[str]
  queryStringParameters: NotRequired[dict[str, str] | None]
  headers: NotRequired[dict[str, str] | None]
  requestContext: NotRequired[dict[str, Any]]


class ExecutionResult(TypedDict):
  statusCode: int
  isBase64Encoded: bool
  headers: dict[str, str | bool]
  body: str


class ErrorBody(TypedDict):
  status: int
  code: str
  message: str
