import http.client

import pytest

from utils.cashfree import CashfreeError, create_refund
from utils.whatsapp import GupshupError, send_template_message


def _raising(exc):
    def _urlopen(*args, **kwargs):
        raise exc
    return _urlopen


@pytest.mark.parametrize("exc", [
    TimeoutError("The read operation timed out"),
    ConnectionResetError(104, "Connection reset by peer"),
    http.client.RemoteDisconnected("Remote end closed connection without response"),
])
def test_cashfree_transport_errors_become_cashfree_errors(monkeypatch, exc):
    monkeypatch.setattr("utils.cashfree.request.urlopen", _raising(exc))

    with pytest.raises(CashfreeError):
        create_refund(order_number="QT-1001", amount=999, refund_id="refund_x", note="Seller response timeout")


@pytest.mark.parametrize("exc", [
    TimeoutError("timed out"),
    http.client.RemoteDisconnected("Remote end closed connection without response"),
])
def test_gupshup_transport_errors_become_gupshup_errors(monkeypatch, exc):
    monkeypatch.setattr("utils.whatsapp.request.urlopen", _raising(exc))

    with pytest.raises(GupshupError):
        send_template_message("seller_new_order", "+919811111111", ["QT-1001"])
