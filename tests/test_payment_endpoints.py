import json

import pytest

import crud
from models import OrderStatus, PaymentTransaction, TransactionStatus


@pytest.fixture
def sslcommerz(make_provider, vault):
    return make_provider("sslcommerz", store_id=vault.encrypt("shop01"), store_password=vault.encrypt("shop01@ssl"))


def _validation(order, status="VALID", amount="1080.00", val_id="VAL-1"):
    return {
        "status": status,
        "val_id": val_id,
        "tran_id": order.order_number,
        "value_a": order.id,
        "amount": amount,
    }


def _success_form(order, val_id="VAL-1"):
    return {
        "tran_id": order.order_number,
        "val_id": val_id,
        "amount": "1080.00",
        "status": "VALID",
        "value_a": order.id,
    }


def _ledger(db, gateway_code, reference):
    txn = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.gateway_code == gateway_code, PaymentTransaction.transaction_id == reference)
        .one()
    )
    db.refresh(txn)
    return txn


# ==================== INIT ====================

def test_init_returns_gateway_url(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("gwprocess/v4/api.php", {"status": "SUCCESS", "sessionkey": "S1", "GatewayPageURL": "https://pay.example/S1"})

    r = client.post("/sslcommerz-payment", json={"action": "init", "orderId": order.id})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["gatewayUrl"] == "https://pay.example/S1"
    assert body["sessionKey"] == "S1"

    txn = db.query(PaymentTransaction).filter(PaymentTransaction.order_id == order.id).one()
    assert txn.gateway_code == "sslcommerz"
    assert txn.transaction_id == order.order_number
    assert txn.status == TransactionStatus.PENDING


def test_init_with_action_in_query_string(client, http, sslcommerz, make_order):
    order = make_order()
    http.add("gwprocess/v4/api.php", {"status": "SUCCESS", "GatewayPageURL": "https://pay.example/S1"})

    r = client.post("/sslcommerz-payment?action=init", json={"orderId": order.id})

    assert r.status_code == 200
    assert r.json()["gatewayUrl"] == "https://pay.example/S1"


def test_inactive_provider_makes_no_network_call(client, http, make_provider, make_order):
    make_provider("bkash", is_active=False, config={"username": "u", "password": "p"})
    order = make_order()

    r = client.post("/bkash-payment", json={"action": "init", "orderId": order.id})

    assert r.status_code == 400
    assert r.json() == {
        "success": False,
        "error": "bKash payment is not configured. Please use manual payment.",
    }
    assert http.calls == []


def test_missing_provider(client, http, make_order):
    order = make_order()

    r = client.post("/nagad-payment", json={"action": "init", "orderId": order.id})

    assert r.status_code == 400
    assert r.json()["success"] is False
    assert http.calls == []


def test_init_requires_order_id(client, sslcommerz):
    r = client.post("/sslcommerz-payment", json={"action": "init"})

    assert r.status_code == 400
    assert r.json()["error"] == "Order ID is required"


def test_init_unknown_order(client, http, sslcommerz):
    r = client.post("/sslcommerz-payment", json={"action": "init", "orderId": "missing"})

    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Order not found"}
    assert http.calls == []


def test_init_order_already_processed(client, http, sslcommerz, make_order):
    order = make_order(status=OrderStatus.CONFIRMED)

    r = client.post("/sslcommerz-payment", json={"action": "init", "orderId": order.id})

    assert r.status_code == 409
    assert r.json()["error"] == "Order already processed"
    assert http.calls == []


def test_init_gateway_failure(client, http, sslcommerz, make_order):
    order = make_order()
    http.add("gwprocess/v4/api.php", {"status": "FAILED", "failedreason": "Invalid store"})

    r = client.post("/sslcommerz-payment", json={"action": "init", "orderId": order.id})

    assert r.status_code == 502
    assert r.json() == {"success": False, "error": "Invalid store"}


def test_init_gateway_unreachable(client, http, sslcommerz, make_order):
    order = make_order()
    http.fail("gwprocess")

    r = client.post("/sslcommerz-payment", json={"action": "init", "orderId": order.id})

    assert r.status_code == 502
    assert r.json()["success"] is False


def test_unknown_gateway(client):
    r = client.post("/paypal-payment", json={"action": "init", "orderId": "x"})

    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Unknown payment gateway"}


def test_invalid_action(client):
    r = client.post("/sslcommerz-payment", json={"action": "refund"})

    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "Invalid action"}


# ==================== CALLBACKS ====================

def test_successful_callback_confirms_order(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("validationserverAPI.php", _validation(order))

    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == f"https://shop.example/order-success?orderId={order.id}"
    db.refresh(order)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_transaction_id == "VAL-1"


def test_replayed_callback_is_idempotent(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("validationserverAPI.php", _validation(order))

    first = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)
    second = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert first.headers["location"] == second.headers["location"]
    assert "order-success" in second.headers["location"]
    db.refresh(order)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_transaction_id == "VAL-1"


def test_failed_verification_leaves_order_pending(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("validationserverAPI.php", {"status": "INVALID_TRANSACTION"})

    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "https://shop.example/checkout?error=verification_failed"
    db.refresh(order)
    assert order.status == OrderStatus.PENDING
    assert order.payment_transaction_id is None


def test_verification_timeout_fails_closed(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.fail("validationserverAPI.php")

    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert r.status_code == 302
    assert "/checkout?error=" in r.headers["location"]
    db.refresh(order)
    assert order.status == OrderStatus.PENDING


def test_amount_mismatch_is_flagged(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("validationserverAPI.php", _validation(order, amount="10.00"))

    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=amount_mismatch"
    db.refresh(order)
    assert order.status == OrderStatus.PENDING
    assert "AMOUNT MISMATCH" in order.notes


def test_callback_for_another_order_number_is_rejected(client, http, sslcommerz, make_order, db):
    order = make_order()
    validation = _validation(order)
    validation["tran_id"] = "ORD-9999"
    http.add("validationserverAPI.php", validation)

    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=invalid"
    db.refresh(order)
    assert order.status == OrderStatus.PENDING


def test_second_transaction_for_confirmed_order(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("validationserverAPI.php", _validation(order))
    client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    http.add("validationserverAPI.php", _validation(order, val_id="VAL-2"))
    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order, "VAL-2"), follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=already_processed"
    db.refresh(order)
    assert order.payment_transaction_id == "VAL-1"


def test_cancel_redirects_without_verification(client, http, sslcommerz, make_order, db):
    order = make_order()

    r = client.post(
        "/sslcommerz-payment?action=cancel",
        data={"tran_id": order.order_number, "status": "CANCELLED", "value_a": order.id},
        follow_redirects=False,
    )

    assert r.status_code == 302
    assert r.headers["location"] == "https://shop.example/checkout?error=cancel"
    assert http.calls == []
    db.refresh(order)
    assert order.status == OrderStatus.PENDING


def test_ipn_is_acknowledged(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("validationserverAPI.php", _validation(order))

    r = client.post("/sslcommerz-payment?action=ipn", data=_success_form(order), follow_redirects=False)

    assert r.status_code == 200
    assert r.text == "IPN_RECEIVED"
    db.refresh(order)
    assert order.status == OrderStatus.CONFIRMED


def test_bkash_flow_uses_ledger_and_execute(client, http, make_provider, make_order, db):
    make_provider("bkash", store_id="app-key", store_password="app-secret", config={"username": "u", "password": "p"})
    order = make_order()
    http.add("token/grant", {"statusCode": "0000", "id_token": "tok"})
    http.add("checkout/create", {"statusCode": "0000", "paymentID": "PAY-1", "bkashURL": "https://bkash.example/PAY-1"})

    init = client.post("/bkash-payment", json={"action": "init", "orderId": order.id})
    assert init.json()["paymentID"] == "PAY-1"

    # execute answers without payerReference, so the order comes from the ledger
    http.add("checkout/execute", {"statusCode": "0000", "transactionStatus": "Completed", "trxID": "TRX-77", "amount": "1080"})
    r = client.get("/bkash-payment?action=success&paymentID=PAY-1&status=success", follow_redirects=False)

    assert r.headers["location"] == f"https://shop.example/order-success?orderId={order.id}"
    db.refresh(order)
    assert order.payment_transaction_id == "TRX-77"

    txn = db.query(PaymentTransaction).filter(PaymentTransaction.transaction_id == "PAY-1").one()
    db.refresh(txn)
    assert txn.status == TransactionStatus.COMPLETED
    assert json.loads(txn.gateway_response)["trxID"] == "TRX-77"


def test_bkash_cancelled_by_customer(client, http, make_provider, make_order, db):
    make_provider("bkash", store_id="app-key", store_password="app-secret", config={"username": "u", "password": "p"})
    order = make_order()

    r = client.get("/bkash-payment?action=success&paymentID=PAY-1&status=cancel", follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=cancel"
    assert http.calls == []
    db.refresh(order)
    assert order.status == OrderStatus.PENDING


def test_sslcommerz_ledger_follows_callbacks(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("gwprocess/v4/api.php", {"status": "SUCCESS", "sessionkey": "S1", "GatewayPageURL": "https://pay.example/S1"})
    client.post("/sslcommerz-payment", json={"action": "init", "orderId": order.id})

    http.add("validationserverAPI.php", _validation(order))
    r = client.post("/sslcommerz-payment?action=success", data=_success_form(order), follow_redirects=False)

    assert "order-success" in r.headers["location"]
    txn = _ledger(db, "sslcommerz", order.order_number)
    assert txn.status == TransactionStatus.COMPLETED
    assert json.loads(txn.gateway_response)["val_id"] == "VAL-1"


def test_sslcommerz_failed_payment_marks_ledger(client, http, sslcommerz, make_order, db):
    order = make_order()
    http.add("gwprocess/v4/api.php", {"status": "SUCCESS", "sessionkey": "S1", "GatewayPageURL": "https://pay.example/S1"})
    client.post("/sslcommerz-payment", json={"action": "init", "orderId": order.id})

    r = client.post(
        "/sslcommerz-payment?action=fail",
        data={"tran_id": order.order_number, "status": "FAILED", "value_a": order.id},
        follow_redirects=False,
    )

    assert r.headers["location"] == "https://shop.example/checkout?error=fail"
    assert _ledger(db, "sslcommerz", order.order_number).status == TransactionStatus.FAILED
    db.refresh(order)
    assert order.status == OrderStatus.PENDING


# ---- Nagad ----

@pytest.fixture
def nagad(make_provider):
    # verification is a plain GET, the RSA keys are only needed at init
    return make_provider("nagad", store_id="683002007104225", store_password="", config={"public_key": "pk", "private_key": "sk"})


def _nagad_verification(order, status="Success", merchant_info=True):
    data = {
        "status": status,
        "issuerPaymentRefNo": "NGD-555" if status == "Success" else None,
        "orderId": order.order_number,
        "amount": "1080.00",
    }
    if merchant_info:
        data["additionalMerchantInfo"] = json.dumps({"order_id": order.id})
    return data


def test_nagad_order_from_merchant_info(client, http, nagad, make_order, db):
    order = make_order(payment_method="nagad")
    http.add("verify/payment/REF-42", _nagad_verification(order))

    r = client.get(
        f"/nagad-payment?action=success&payment_ref_id=REF-42&status=Success&order_id={order.order_number}",
        follow_redirects=False,
    )

    assert r.headers["location"] == f"https://shop.example/order-success?orderId={order.id}"
    db.refresh(order)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_transaction_id == "NGD-555"


def test_nagad_order_from_ledger(client, http, nagad, make_order, db):
    order = make_order(payment_method="nagad")
    crud.create_payment_transaction(
        db, order_id=order.id, gateway_code="nagad", transaction_id="REF-42", amount=order.total, gateway_response={}
    )
    http.add("verify/payment/REF-42", _nagad_verification(order, merchant_info=False))

    r = client.get("/nagad-payment?action=success&payment_ref_id=REF-42&status=Success", follow_redirects=False)

    assert r.headers["location"] == f"https://shop.example/order-success?orderId={order.id}"
    db.refresh(order)
    assert order.payment_transaction_id == "NGD-555"
    assert _ledger(db, "nagad", "REF-42").status == TransactionStatus.COMPLETED


def test_nagad_unverified_payment_leaves_order_pending(client, http, nagad, make_order, db):
    order = make_order(payment_method="nagad")
    crud.create_payment_transaction(
        db, order_id=order.id, gateway_code="nagad", transaction_id="REF-42", amount=order.total, gateway_response={}
    )
    http.add("verify/payment/REF-42", _nagad_verification(order, status="Failed"))

    r = client.get("/nagad-payment?action=success&payment_ref_id=REF-42&status=Success", follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=verification_failed"
    db.refresh(order)
    assert order.status == OrderStatus.PENDING
    assert order.payment_transaction_id is None
    assert _ledger(db, "nagad", "REF-42").status == TransactionStatus.FAILED


# ---- AamarPay ----

@pytest.fixture
def aamarpay(make_provider):
    return make_provider("aamarpay", store_id="aamarpaytest", store_password="signature-key")


def _aamarpay_callback(order):
    return {
        "pay_status": "Successful",
        "mer_txnid": order.order_number,
        "pg_txnid": "AAM1700000001",
        "opt_a": order.id,
        "amount": "1080.00",
    }


def test_aamarpay_passthrough_confirms_order(client, http, aamarpay, make_order, db):
    order = make_order(payment_method="aamarpay")
    http.add("jsonpost.php", {"result": "true", "payment_url": "https://sandbox.aamarpay.com/paynow.php?track=AAM1"})

    init = client.post("/aamarpay-payment", json={"action": "init", "orderId": order.id})

    assert init.json()["gatewayUrl"] == "https://sandbox.aamarpay.com/paynow.php?track=AAM1"
    assert http.calls_to("jsonpost.php")[0]["json"]["opt_a"] == order.id

    http.add("trxcheck/request.php", _aamarpay_callback(order))
    r = client.post("/aamarpay-payment?action=success", data=_aamarpay_callback(order), follow_redirects=False)

    assert r.headers["location"] == f"https://shop.example/order-success?orderId={order.id}"
    assert http.calls_to("trxcheck/request.php")[0]["params"]["request_id"] == order.order_number
    db.refresh(order)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_transaction_id == "AAM1700000001"
    assert _ledger(db, "aamarpay", order.order_number).status == TransactionStatus.COMPLETED


def test_aamarpay_unverified_payment_leaves_order_pending(client, http, aamarpay, make_order, db):
    order = make_order(payment_method="aamarpay")
    http.add("trxcheck/request.php", {"pay_status": "Failed", "mer_txnid": order.order_number, "opt_a": order.id})

    r = client.post("/aamarpay-payment?action=success", data=_aamarpay_callback(order), follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=verification_failed"
    db.refresh(order)
    assert order.status == OrderStatus.PENDING
    assert order.payment_transaction_id is None


# ---- SurjoPay ----

@pytest.fixture
def surjopay(make_provider, http):
    http.add("get_token", {
        "token": "tok",
        "token_type": "Bearer",
        "store_id": 1,
        "execute_url": "https://sandbox.shurjopayment.com/api/secret-pay",
    })
    return make_provider("surjopay", store_id="sp_user", store_password="sp_pass")


def _surjopay_verification(order, sp_code="1000"):
    return [{
        "order_id": "SP6a1b2c3d",
        "sp_code": sp_code,
        "sp_message": "Success" if sp_code == "1000" else "Bank transaction failed",
        "value1": order.id,
        "customer_order_id": order.order_number,
        "amount": "1080.00",
    }]


def test_surjopay_passthrough_confirms_order(client, http, surjopay, make_order, db):
    order = make_order(payment_method="surjopay")
    http.add("secret-pay", {"checkout_url": "https://sandbox.shurjopayment.com/spaycheckout/?token=x", "sp_order_id": "SP6a1b2c3d"})

    init = client.post("/surjopay-payment", json={"action": "init", "orderId": order.id})

    assert init.json()["sp_order_id"] == "SP6a1b2c3d"
    assert http.calls_to("secret-pay")[0]["json"]["value1"] == order.id

    http.add("verification", _surjopay_verification(order))
    r = client.get("/surjopay-payment?action=success&order_id=SP6a1b2c3d", follow_redirects=False)

    assert r.headers["location"] == f"https://shop.example/order-success?orderId={order.id}"
    assert http.calls_to("verification")[0]["json"] == {"order_id": "SP6a1b2c3d"}
    db.refresh(order)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_transaction_id == "SP6a1b2c3d"
    assert _ledger(db, "surjopay", "SP6a1b2c3d").status == TransactionStatus.COMPLETED


def test_surjopay_declined_payment_leaves_order_pending(client, http, surjopay, make_order, db):
    order = make_order(payment_method="surjopay")
    http.add("verification", _surjopay_verification(order, sp_code="1002"))

    r = client.get("/surjopay-payment?action=success&order_id=SP6a1b2c3d", follow_redirects=False)

    assert r.headers["location"] == "https://shop.example/checkout?error=verification_failed"
    db.refresh(order)
    assert order.status == OrderStatus.PENDING
    assert order.payment_transaction_id is None


def test_callback_without_provider_fails_closed(client, http):
    r = client.get("/surjopay-payment?action=success&order_id=SP1", follow_redirects=False)

    assert r.status_code == 302
    assert r.headers["location"] == "https://shop.example/checkout?error=processing"
    assert http.calls == []


# ==================== CLIENT VERIFY ====================

def test_client_verify_uses_reference_field(client, http, make_provider):
    make_provider("surjopay", store_id="sp_user", store_password="sp_pass")
    http.add("get_token", {"token": "tok", "token_type": "Bearer", "store_id": 1})
    http.add("verification", [{"order_id": "SP1", "sp_code": 1000, "sp_message": "Success"}])

    r = client.post("/surjopay-payment", json={"action": "verify", "sp_order_id": "SP1"})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["transaction_id"] == "SP1"
    assert body["status"] == "Success"


def test_client_verify_requires_reference(client, make_provider):
    make_provider("surjopay", store_id="sp_user", store_password="sp_pass")

    r = client.post("/surjopay-payment", json={"action": "verify"})

    assert r.status_code == 400
    assert r.json()["error"] == "Payment reference is required"


# ==================== CORS ====================

def test_cors_preflight(client):
    r = client.options(
        "/bkash-payment",
        headers={
            "Origin": "https://shop.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, content-type",
        },
    )

    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"


def test_bare_options_request(client):
    r = client.options("/bkash-payment")

    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"
    assert "content-type" in r.headers["access-control-allow-headers"]
