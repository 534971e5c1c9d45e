from aws_lambda_powertools.utilities.typing import LambdaContext

from imghandler.imagehandler import index as imagehandler
from imghandler.typing import (
    ExecutionResult,
    ImageHandlerEvent,
    Request,
    ResponseResult,
    ViewerRequestEvent
)
from imghandler.viewerrequest import index as viewerrequest


def viewer_request_lambda_handler(
    event: ViewerRequestEvent,
    _: LambdaContext,
) -> Request | ResponseResult:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = viewerrequest.lambda_main(event)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def image_handler_lambda_handler(
    event: ImageHandlerEvent,
    _: LambdaContext,
) -> ExecutionResult:
  return imagehandler.lambda_main(event)
