"""Canonical request form and its HMAC signature.

The edge authenticator verifies requests with these functions and the offline
command line signs URLs with them, so both sides always agree on the bytes
that are signed.

Canonical form of a request:

  <uri>[?<entries sorted and joined with '&'>]

where entries are the raw ``key=value`` pieces of the query string with every
``signature`` entry removed. Multi-valued parameters simply appear as repeated
entries. Values are kept exactly as they arrive on the wire (percent-encoded).
"""
import argparse
import base64
import hashlib
import hmac
import json
import sys
import time
from typing import Any, Iterable, Optional, Sequence
from urllib import parse

SIGNATURE_PARAM = 'signature'
EXPIRES_PARAM = 'expires'

_SIGNATURE_PREFIX = f'{SIGNATURE_PARAM}='


def split_query(querystring: str) -> list[str]:
  entries = []
  for entry in querystring.split('&'):
    if entry == '':
      continue
    if '=' not in entry:
      entry = f'{entry}='
    entries.append(entry)
  return entries


def is_signature_entry(entry: str) -> bool:
  return entry.startswith(_SIGNATURE_PREFIX)


def find_signature(querystring: str) -> Optional[str]:
  for entry in split_query(querystring):
    if is_signature_entry(entry):
      value = entry[len(_SIGNATURE_PREFIX):]
      return None if value == '' else value
  return None


def find_param(querystring: str, name: str) -> Optional[str]:
  prefix = f'{name}='
  for entry in split_query(querystring):
    if entry.startswith(prefix):
      return parse.unquote(entry[len(prefix):])
  return None


def canonical_query(querystring: str, keep_signature: bool = False) -> str:
  entries = sorted(split_query(querystring))
  if not keep_signature:
    entries = [e for e in entries if not is_signature_entry(e)]
  return '&'.join(entries)


def canonical_string(uri: str, querystring: str) -> str:
  qs = canonical_query(querystring)
  if qs == '':
    return uri
  return f'{uri}?{qs}'


def sign(secret: str, uri: str, querystring: str) -> str:
  return hmac.new(
      secret.encode('utf-8'),
      canonical_string(uri, querystring).encode('utf-8'),
      hashlib.sha256,
  ).hexdigest()


def verify(secret: str, uri: str, querystring: str, signature: str) -> bool:
  return hmac.compare_digest(sign(secret, uri, querystring), signature)


def encode_query(params: Iterable[tuple[str, str]]) -> str:
  return '&'.join(f"{parse.quote(k, safe='')}={parse.quote(v, safe='')}" for k, v in params)


def encode_payload(payload: dict[str, Any]) -> str:
  return '/' + base64.b64encode(json.dumps(payload).encode('utf-8')).decode()


def signed_url(
    secret: str,
    uri: str,
    params: Sequence[tuple[str, str]] = (),
    expires: Optional[int] = None,
) -> str:
  params = list(params)
  if expires is not None:
    params.append((EXPIRES_PARAM, str(expires)))

  qs = canonical_query(encode_query(params))
  signature = sign(secret, uri, qs)
  if qs == '':
    return f'{uri}?{SIGNATURE_PARAM}={signature}'
  return f'{uri}?{qs}&{SIGNATURE_PARAM}={signature}'


def parse_param(s: str) -> tuple[str, str]:
  if '=' not in s:
    raise argparse.ArgumentTypeError(f'expected key=value: {s}')
  k, v = s.split('=', 1)
  return (k, v)


def main(argv: Optional[Sequence[str]] = None) -> int:
  parser = argparse.ArgumentParser(description='Sign an image request URL')
  parser.add_argument('--secret', required=True)
  target = parser.add_mutually_exclusive_group(required=True)
  target.add_argument('--path', help='plain request path, e.g. /img/photo.jpg')
  target.add_argument('--payload', help='JSON request, base64-encoded into the path')
  parser.add_argument('--param', action='append', type=parse_param, default=[])
  parser.add_argument('--expires-in', type=int, help='seconds from now')
  args = parser.parse_args(argv)

  uri = args.path if args.path is not None else encode_payload(json.loads(args.payload))
  expires = None if args.expires_in is None else int(time.time()) + args.expires_in

  url = signed_url(args.secret, uri, args.param, expires)
  qs = parse.urlsplit(url).query
  print(canonical_string(uri, qs))
  print(find_signature(qs))
  print(url)
  return 0


if __name__ == '__main__':
  sys.exit(main())
