import argparse
import asyncio
import json
import sys

from invoker.constants import DEFAULT_TIMEOUT
from invoker.errors import InvokerError
from invoker.helper import helper
from invoker.main import discover_services, main, parse_idl


def parse_metadata(pairs):
    metadata = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"Metadata must look like key=value, got '{pair}'")
        metadata[key.strip()] = value.strip()
    return metadata


def creds_from_args(args):
    creds = {
        'ca_certificate': args.ca_certificate,
        'client_key': args.client_key,
        'client_certificate': args.client_certificate,
    }
    return {k: v for k, v in creds.items() if v}


def build_parser():
    parser = argparse.ArgumentParser(prog="grpc-invoker", description="Call gRPC services without generated stubs")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_tls(p):
        p.add_argument("--ca-certificate", help="PEM root certificate")
        p.add_argument("--client-key", help="PEM client private key")
        p.add_argument("--client-certificate", help="PEM client certificate chain")

    discover = sub.add_parser("discover", help="list services through server reflection")
    discover.add_argument("address")
    add_tls(discover)

    parse = sub.add_parser("parse", help="parse .proto text without compiling it")
    parse.add_argument("file")

    call = sub.add_parser("call", help="invoke a method")
    call.add_argument("address")
    call.add_argument("service")
    call.add_argument("method")
    call.add_argument("--data", default="{}", help="JSON request body")
    call.add_argument("--message", action="append", default=[],
                      help="JSON message for client or bidirectional streams, repeatable")
    call.add_argument("--metadata", action="append", default=[], help="key=value, repeatable")
    call.add_argument("--proto", help=".proto file compiled with protoc instead of reflection")
    call.add_argument("--proto-path", help="import root for --proto")
    call.add_argument("--idl", help=".proto file parsed as text instead of reflection")
    call.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT)
    add_tls(call)
    return parser


async def run_command(args) -> int:
    if args.command == "discover":
        catalog = await discover_services(args.address, creds_from_args(args))
        print(json.dumps(catalog.to_dict(), indent=2))
        return 0

    if args.command == "parse":
        with open(args.file, "r") as f:
            catalog = parse_idl(f.read())
        print(json.dumps(catalog.to_dict(), indent=2))
        return 0

    proto_text = None
    if args.idl:
        with open(args.idl, "r") as f:
            proto_text = f.read()

    messages = [json.loads(m) for m in args.message]
    exit_code = 0
    async with main(args.address, creds_from_args(args), proto_text=proto_text, proto_file=args.proto,
                    proto_import_path=args.proto_path, timeout=args.timeout) as client:
        async for response in client.execute(args.service, args.method, json.loads(args.data), messages,
                                             parse_metadata(args.metadata)):
            print(json.dumps(response.to_dict(), indent=2))
            if not response.success:
                exit_code = 1
    return exit_code


def run(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run_command(args))
    except (InvokerError, OSError, ValueError) as e:
        helpercls = helper()
        helpercls.log('run', [args.command], exception=e)
        print(json.dumps(helpercls.exception_to_serializable(e, {"command": args.command}), indent=2))
        return 1


if __name__ == "__main__":
    sys.exit(run())
