"""
Dispatches unary and streaming calls against a SchemaCatalog.

Every call first resolves its service and method; a resolution failure is
reported as a failure CallResponse before any network traffic. Streaming
calls run the wire exchange in a worker task that feeds a bounded queue, so a
slow consumer stalls the worker instead of growing memory.
"""
import asyncio
import functools
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Iterable, List, Optional, Tuple, Union

from invoker.calls import CallRequest, CallResponse, CallState, CallType
from invoker.catalog import MethodDescriptor, SchemaCatalog, ServiceDescriptor
from invoker.constants import DEFAULT_TIMEOUT, STREAM_QUEUE_CAPACITY
from invoker.errors import ConversionError, DescriptorError, InvokerError
from invoker.helper import helper
from invoker.ProtobufConverter import ProtobufConverter

_END = object()


class MessageChannel:
    """Bounded producer side of a client or bidirectional stream.

    `send` waits while the channel is full; `close` ends the stream once the
    consumer has drained what was sent. When the call reading the channel
    finishes early it calls `abandon`, after which every pending and later
    `send` raises InvokerError.
    """

    def __init__(self, capacity: int = STREAM_QUEUE_CAPACITY):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._abandoned = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    async def send(self, message: Any):
        if self.abandoned:
            raise InvokerError("The call reading this message channel has finished")
        if self._closed:
            raise InvokerError("Cannot send on a closed message channel")
        if not await self._put(message):
            raise InvokerError("The call reading this message channel has finished")

    async def close(self):
        if not self._closed:
            self._closed = True
            await self._put(_END)

    def abandon(self):
        """Reader side: stop accepting messages and wake any blocked sender."""
        self._abandoned.set()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    async def _put(self, item: Any) -> bool:
        if self.abandoned:
            return False
        put = asyncio.ensure_future(self._queue.put(item))
        abandoned = asyncio.ensure_future(self._abandoned.wait())
        try:
            await asyncio.wait((put, abandoned), return_when=asyncio.FIRST_COMPLETED)
        finally:
            abandoned.cancel()
            if not put.done():
                put.cancel()
        return not self.abandoned

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _END:
            # Leave the marker for any later iteration
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item


async def iterate_messages(messages: Union[AsyncIterable, Iterable, None]) -> AsyncIterator[Any]:
    if messages is None:
        return
    if hasattr(messages, "__aiter__"):
        async for message in messages:
            yield message
    else:
        for message in messages:
            yield message


@dataclass(frozen=True)
class PreparedCall:
    catalog: SchemaCatalog
    service: ServiceDescriptor
    method: MethodDescriptor
    converter: ProtobufConverter
    input_class: Any
    output_class: Any
    path: str
    metadata: List[Tuple[str, str]]
    timeout: Optional[float]


class CallEngine(helper):

    def __init__(self, connection, catalog: Optional[SchemaCatalog] = None, resolver=None,
                 timeout: Optional[float] = DEFAULT_TIMEOUT, queue_capacity: int = STREAM_QUEUE_CAPACITY):
        super().__init__()
        self.connection = connection
        self.catalog = catalog
        self.resolver = resolver
        self.timeout = timeout
        self.queue_capacity = queue_capacity

    async def get_catalog(self) -> SchemaCatalog:
        if self.catalog is not None:
            return self.catalog
        if self.resolver is not None:
            return await self.resolver.descriptor_pool()
        raise DescriptorError("No schema source configured: pass a catalog or a reflection resolver")

    async def _prepare(self, request: CallRequest, call_type: CallType) -> PreparedCall:
        """Resolve everything a call needs before it touches the network."""
        catalog = await self.get_catalog()
        service, method = catalog.resolve_method(request.service, request.method)
        if method.call_type != call_type:
            raise DescriptorError(
                f"Method '{service.full_name}/{method.name}' is {method.call_type.value}, not {call_type.value}"
            )

        converter = ProtobufConverter(catalog)
        input_class = catalog.message_class(method.input_type)
        output_class = catalog.message_class(method.output_type)

        if request.auth:
            # oauth2 may fetch a token over HTTP
            metadata = await asyncio.to_thread(self.build_metadata, request.metadata, request.auth)
        else:
            metadata = self.build_metadata(request.metadata)

        default_timeout = self.timeout if call_type == CallType.UNARY else None
        timeout = request.timeout if request.timeout is not None else default_timeout
        return PreparedCall(catalog, service, method, converter, input_class, output_class,
                            catalog.wire_path(service, method), metadata, timeout)

    async def invoke_unary(self, request: CallRequest) -> CallResponse:
        state = CallState.RESOLVING
        try:
            call = await self._prepare(request, CallType.UNARY)
            state = CallState.ENCODING
            payload = call.converter.encode(request.message, call.input_class)
            state = CallState.IN_FLIGHT
            raw = await self.connection.unary_unary(call.path, payload, metadata=call.metadata, timeout=call.timeout)
            state = CallState.DECODING
            data = call.converter.decode(raw, call.output_class)
            state = CallState.DONE
        except Exception as e:
            self.log(function_name='invoke_unary', args=[request.service, request.method], exception=e)
            return self.error_response(e, state)

        self.log(function_name='invoke_unary', args=[request.service, request.method], output=data)
        return CallResponse.ok(data)

    def invoke_server_stream(self, request: CallRequest) -> AsyncIterator[CallResponse]:
        """K data responses, then one completion response. Lazy and single-use."""
        return self._drain(functools.partial(self._server_stream_worker, request))

    def invoke_client_stream(self, request: CallRequest, messages) -> AsyncIterator[CallResponse]:
        """One acknowledgment per forwarded message, then the final response."""
        return self._drain(functools.partial(self._client_stream_worker, request, messages))

    def invoke_bidirectional(self, request: CallRequest, messages) -> AsyncIterator[CallResponse]:
        """Server responses as they arrive, then a summary once both sides finish."""
        return self._drain(functools.partial(self._bidirectional_worker, request, messages))

    async def execute(self, request: CallRequest, messages=None) -> AsyncIterator[CallResponse]:
        """Run any call type, yielding every response it produces."""
        if request.call_type == CallType.UNARY:
            yield await self.invoke_unary(request)
            return

        if request.call_type == CallType.SERVER_STREAMING:
            stream = self.invoke_server_stream(request)
        elif request.call_type == CallType.CLIENT_STREAMING:
            stream = self.invoke_client_stream(request, messages)
        else:
            stream = self.invoke_bidirectional(request, messages)

        try:
            async for response in stream:
                yield response
        finally:
            await stream.aclose()

    async def _drain(self, worker) -> AsyncIterator[CallResponse]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_capacity)
        task = asyncio.ensure_future(worker(queue))
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item
                if not item.success:
                    return
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _fail(self, queue: asyncio.Queue, function_name: str, request: CallRequest,
                    error: Exception, state: CallState):
        self.log(function_name=function_name, args=[request.service, request.method], exception=error)
        await queue.put(self.error_response(error, state))

    async def _server_stream_worker(self, request: CallRequest, queue: asyncio.Queue):
        state = CallState.RESOLVING
        responses = None
        try:
            call = await self._prepare(request, CallType.SERVER_STREAMING)
            state = CallState.ENCODING
            payload = call.converter.encode(request.message, call.input_class)
            state = CallState.IN_FLIGHT
            responses = self.connection.unary_stream(call.path, payload, metadata=call.metadata, timeout=call.timeout)
            count = 0
            async for raw in responses:
                state = CallState.DECODING
                data = call.converter.decode(raw, call.output_class)
                count += 1
                await queue.put(CallResponse.ok(data, status_message=f"Stream message {count}"))
                state = CallState.IN_FLIGHT
            state = CallState.DONE
        except Exception as e:
            await self._fail(queue, 'invoke_server_stream', request, e, state)
            return
        finally:
            await self._close_stream(responses)

        await queue.put(CallResponse.ok(
            {"message": "Stream completed", "total_messages": count},
            status_message="Stream completed",
        ))
        await queue.put(_END)

    async def _client_stream_worker(self, request: CallRequest, messages, queue: asyncio.Queue):
        state = CallState.RESOLVING
        errors: List[Exception] = []
        sent = 0
        try:
            call = await self._prepare(request, CallType.CLIENT_STREAMING)

            async def outbound():
                nonlocal sent
                async for document in iterate_messages(messages):
                    try:
                        payload = call.converter.encode(document, call.input_class)
                    except (ConversionError, DescriptorError) as e:
                        errors.append(e)
                        return
                    yield payload
                    sent += 1
                    await queue.put(CallResponse.ok(
                        {"message": "Message received", "count": sent},
                        status_message="Message acknowledged",
                    ))

            state = CallState.IN_FLIGHT
            raw = await self.connection.stream_unary(call.path, outbound(), metadata=call.metadata, timeout=call.timeout)
            if errors:
                raise errors[0]
            state = CallState.DECODING
            data = call.converter.decode(raw, call.output_class)
        except Exception as e:
            if errors:
                e, state = errors[0], CallState.ENCODING
            await self._fail(queue, 'invoke_client_stream', request, e, state)
            return
        finally:
            self._release_messages(messages)

        await queue.put(CallResponse.ok(
            {"message": "Client stream completed", "total_messages": sent, "response": data},
            status_message="Client stream completed",
        ))
        await queue.put(_END)

    async def _bidirectional_worker(self, request: CallRequest, messages, queue: asyncio.Queue):
        state = CallState.RESOLVING
        errors: List[Exception] = []
        sent = 0
        received = 0
        responses = None
        try:
            call = await self._prepare(request, CallType.BIDIRECTIONAL)

            async def outbound():
                nonlocal sent
                async for document in iterate_messages(messages):
                    try:
                        payload = call.converter.encode(document, call.input_class)
                    except (ConversionError, DescriptorError) as e:
                        errors.append(e)
                        return
                    yield payload
                    sent += 1

            state = CallState.IN_FLIGHT
            responses = self.connection.stream_stream(call.path, outbound(), metadata=call.metadata, timeout=call.timeout)
            async for raw in responses:
                state = CallState.DECODING
                data = call.converter.decode(raw, call.output_class)
                received += 1
                await queue.put(CallResponse.ok(data, status_message=f"Stream message {received}"))
                state = CallState.IN_FLIGHT
            if errors:
                raise errors[0]
        except Exception as e:
            if errors:
                e, state = errors[0], CallState.ENCODING
            await self._fail(queue, 'invoke_bidirectional', request, e, state)
            return
        finally:
            self._release_messages(messages)
            await self._close_stream(responses)

        await queue.put(CallResponse.ok(
            {
                "message": "Bidirectional stream completed",
                "total_messages_sent": sent,
                "total_messages_received": received,
            },
            status_message="Bidirectional stream completed",
        ))
        await queue.put(_END)

    @staticmethod
    def _release_messages(messages):
        if isinstance(messages, MessageChannel):
            messages.abandon()

    @staticmethod
    async def _close_stream(responses):
        aclose = getattr(responses, "aclose", None)
        if aclose is not None:
            await aclose()
