import grpc
import pytest

from grpcmw import validator
from grpcmw.callcontext import CallContext, StatusError

ERR_MSG = "cannot sleep for more than 10s"


class LegacyPing:
    """Offers only the legacy validate()."""

    def __init__(self, sleep_time_ms=0, value="something"):
        self.sleep_time_ms = sleep_time_ms
        self.value = value
        self.calls = []

    def validate(self):
        self.calls.append("validate")
        if self.sleep_time_ms > 10000:
            raise ValueError(ERR_MSG)


class FlagPing:
    """Offers validate(all)."""

    def __init__(self, sleep_time_ms=0):
        self.sleep_time_ms = sleep_time_ms
        self.calls = []

    def validate(self, all):
        self.calls.append(("validate", all))
        if self.sleep_time_ms > 10000:
            raise ValueError(ERR_MSG)


class AllPing(FlagPing):
    """Offers validate_all() and validate(all)."""

    def validate_all(self):
        self.calls.append("validate_all")
        if self.sleep_time_ms > 10000:
            raise ValueError(ERR_MSG)


def good_legacy():
    return LegacyPing()


def bad_legacy():
    return LegacyPing(sleep_time_ms=10001)


@pytest.mark.parametrize("factory", [LegacyPing, FlagPing, AllPing])
@pytest.mark.parametrize("fail_fast", [False, True])
def test_validate_wrapper_good_messages(factory, fail_fast):
    msg = factory()
    assert validator.validate(CallContext(), msg, fail_fast, None) is None
    assert len(msg.calls) == 1


@pytest.mark.parametrize("factory", [LegacyPing, FlagPing, AllPing])
@pytest.mark.parametrize("fail_fast", [False, True])
def test_validate_wrapper_bad_messages(factory, fail_fast):
    with pytest.raises(StatusError) as info:
        validator.validate(CallContext(), factory(sleep_time_ms=10001), fail_fast, None)
    assert info.value.code == grpc.StatusCode.INVALID_ARGUMENT
    assert info.value.details == ERR_MSG


def _calls_handler(ctx, request):
    return list(request.calls)


def test_validate_dispatch_without_fail_fast():
    interceptor = validator.unary_server_interceptor()
    results = [
        interceptor(CallContext(), msg, None, _calls_handler)
        for msg in (FlagPing(), AllPing(), LegacyPing())
    ]
    assert results == [[("validate", True)], ["validate_all"], ["validate"]]


def test_validate_dispatch_with_fail_fast():
    interceptor = validator.unary_server_interceptor(validator.with_fail_fast())
    results = [
        interceptor(CallContext(), msg, None, _calls_handler)
        for msg in (FlagPing(), AllPing(), LegacyPing())
    ]
    assert results == [[("validate", False)], [("validate", False)], ["validate"]]


def test_validate_ignores_messages_without_validation():
    assert validator.validate(CallContext(), {"value": "x"}, False, None) is None
    assert validator.validate(CallContext(), "plain", True, None) is None


def test_validate_calls_callback_with_context_and_error():
    got = []
    ctx = CallContext().with_value("k", "v")
    with pytest.raises(StatusError):
        validator.validate(ctx, bad_legacy(), False, lambda c, err: got.append((c.value("k"), str(err))))
    assert got == [("v", ERR_MSG)]


def test_status_error_text():
    with pytest.raises(StatusError) as info:
        validator.validate(CallContext(), bad_legacy(), False, None)
    assert str(info.value) == f"rpc error: code = InvalidArgument desc = {ERR_MSG}"


def _echo_handler(ctx, request):
    return {"value": request.value}


ALL_SERVER_OPTIONS = [
    (),
    (validator.with_fail_fast(),),
]


@pytest.mark.parametrize("opts", ALL_SERVER_OPTIONS)
def test_unary_server_valid_passes(opts):
    interceptor = validator.unary_server_interceptor(*opts)
    assert interceptor(CallContext(), good_legacy(), None, _echo_handler) == {"value": "something"}


@pytest.mark.parametrize("opts", ALL_SERVER_OPTIONS)
def test_unary_server_invalid_errors(opts):
    interceptor = validator.unary_server_interceptor(*opts)
    called = []
    with pytest.raises(StatusError) as info:
        interceptor(CallContext(), bad_legacy(), None, lambda c, r: called.append(r))
    assert info.value.code == grpc.StatusCode.INVALID_ARGUMENT
    assert called == []


class FakeServerStream:
    def __init__(self, messages, ctx=None):
        self._messages = list(messages)
        self._ctx = ctx or CallContext()
        self.sent = []

    def context(self):
        return self._ctx

    def recv_msg(self):
        if not self._messages:
            raise EOFError
        return self._messages.pop(0)

    def send_msg(self, message):
        self.sent.append(message)


def _drain_handler(received):
    def handler(srv, stream):
        while True:
            try:
                msg = stream.recv_msg()
            except EOFError:
                return "done"
            received.append(msg)
            stream.send_msg({"value": msg.value})

    return handler


@pytest.mark.parametrize("opts", ALL_SERVER_OPTIONS)
def test_stream_server_valid_passes(opts):
    interceptor = validator.stream_server_interceptor(*opts)
    stream = FakeServerStream([good_legacy(), good_legacy()])
    received = []
    assert interceptor(None, stream, None, _drain_handler(received)) == "done"
    assert len(received) == 2
    assert stream.sent == [{"value": "something"}, {"value": "something"}]


@pytest.mark.parametrize("opts", ALL_SERVER_OPTIONS)
def test_stream_server_invalid_on_first_message(opts):
    interceptor = validator.stream_server_interceptor(*opts)
    stream = FakeServerStream([bad_legacy()])
    with pytest.raises(StatusError) as info:
        interceptor(None, stream, None, _drain_handler([]))
    assert info.value.code == grpc.StatusCode.INVALID_ARGUMENT


def test_bidi_stream_rejects_bad_message_after_good_ones():
    interceptor = validator.stream_server_interceptor()
    stream = FakeServerStream([good_legacy(), good_legacy(), bad_legacy()])
    received = []
    with pytest.raises(StatusError) as info:
        interceptor(None, stream, None, _drain_handler(received))
    assert info.value.code == grpc.StatusCode.INVALID_ARGUMENT
    assert len(received) == 2
    assert len(stream.sent) == 2


def test_validating_stream_delegates_context_and_send():
    ctx = CallContext().with_value("k", 1)
    inner = FakeServerStream([], ctx)
    wrapped = validator.ValidatingServerStream(inner, validator._Options())
    wrapped.send_msg("m")
    assert wrapped.context().value("k") == 1
    assert inner.sent == ["m"]


def test_validating_stream_recv_uses_stream_context_for_callback():
    got = []
    ctx = CallContext().with_value("k", "stream")
    opts = validator._Options(on_validation_err_callback=lambda c, err: got.append(c.value("k")))
    wrapped = validator.ValidatingServerStream(FakeServerStream([bad_legacy()], ctx), opts)
    with pytest.raises(StatusError):
        wrapped.recv_msg()
    assert got == ["stream"]


def _run_server_suite(opts):
    unary = validator.unary_server_interceptor(*opts)
    stream = validator.stream_server_interceptor(*opts)
    unary(CallContext(), good_legacy(), None, _echo_handler)
    with pytest.raises(StatusError):
        unary(CallContext(), bad_legacy(), None, _echo_handler)
    stream(None, FakeServerStream([good_legacy()]), None, _drain_handler([]))
    with pytest.raises(StatusError):
        stream(None, FakeServerStream([bad_legacy()]), None, _drain_handler([]))
    with pytest.raises(StatusError):
        stream(
            None,
            FakeServerStream([good_legacy(), good_legacy(), bad_legacy()]),
            None,
            _drain_handler([]),
        )


def test_server_suite_with_error_callback():
    got = []
    _run_server_suite((validator.with_on_validation_err_callback(lambda c, err: got.append(str(err))),))
    assert got == [ERR_MSG, ERR_MSG, ERR_MSG]


def test_server_suite_with_fail_fast_and_error_callback():
    got = []
    _run_server_suite(
        (
            validator.with_fail_fast(),
            validator.with_on_validation_err_callback(lambda c, err: got.append(str(err))),
        )
    )
    assert got == [ERR_MSG, ERR_MSG, ERR_MSG]


def _ping_invoker(ctx, method, request, *call_options):
    return {"value": request.value, "options": call_options}


@pytest.mark.parametrize("opts", ALL_SERVER_OPTIONS)
def test_unary_client_valid_passes(opts):
    interceptor = validator.unary_client_interceptor(*opts)
    resp = interceptor(CallContext(), "/svc/Ping", good_legacy(), _ping_invoker, "opt")
    assert resp == {"value": "something", "options": ("opt",)}


def test_unary_client_invalid_errors_before_sending():
    got = []
    sent = []
    interceptor = validator.unary_client_interceptor(
        validator.with_fail_fast(),
        validator.with_on_validation_err_callback(lambda c, err: got.append(str(err))),
    )
    with pytest.raises(StatusError) as info:
        interceptor(CallContext(), "/svc/Ping", bad_legacy(), lambda *a: sent.append(a))
    assert info.value.code == grpc.StatusCode.INVALID_ARGUMENT
    assert sent == []
    assert got == [ERR_MSG]