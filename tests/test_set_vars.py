import pytest

from bifrost import variable
from bifrost.middlewares.registry import find_handler_by_type
from bifrost.middlewares.set_vars import SetVarsMiddleware, create_middleware
from bifrost.request import RequestContext


def test_set_vars_middleware():
    factory = find_handler_by_type("setvars")
    params = {
        variable.HTTP_REQUEST_PATH_ALIAS: "/orders/{order_id}",
        variable.UPSTREAM_REQUEST_PATH_ALIAS: "/backend/orders/{order_id}",
    }
    m = factory(params)
    c = RequestContext()
    c.request.method = "GET"
    c.request.path = "/orders/123"
    m(c)
    assert c.get_string(variable.HTTP_REQUEST_PATH_ALIAS) == "/orders/{order_id}"
    assert (
        c.get_string(variable.UPSTREAM_REQUEST_PATH_ALIAS)
        == "/backend/orders/{order_id}"
    )


def test_empty_key_is_skipped():
    c = RequestContext()
    SetVarsMiddleware({"": "ignored", "kept": 7})(c)
    assert c.variables == {"kept": 7}


def test_values_visible_through_var_directive():
    c = RequestContext()
    SetVarsMiddleware({"user_id": 98765})(c)
    assert variable.get_int("$var.user_id", c) == 98765


def test_factory_rejects_empty_params():
    with pytest.raises(ValueError, match="setvars middleware params is empty"):
        create_middleware({})