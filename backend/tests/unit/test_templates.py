# backend/tests/unit/test_templates.py
from flowbot.workflows.templates import build_scope, lookup, render, resolve


def test_render_substitutes_nested_paths():
    variables = {"user": {"first_name": "Ada", "balance": 100}}
    assert render("Hi {user.first_name}, balance: {user.balance}", variables) == "Hi Ada, balance: 100"


def test_double_braces_are_accepted():
    assert render("Hello {{ name }}!", {"name": "Bob"}) == "Hello Bob!"


def test_unknown_placeholders_render_empty():
    assert render("Code: {missing.value}.", {}) == "Code: ."


def test_text_without_placeholders_is_untouched():
    assert render("Price is 5 {USD", {}) == "Price is 5 {USD"
    assert render("", {}) == ""
    assert render(None, {}) == ""


def test_values_are_formatted_for_chat():
    variables = {"ok": True, "amount": 150.0, "tags": ["a", "b"], "empty": None}
    assert render("{ok} {amount} {tags} [{empty}]", variables) == "true 150 a, b []"


def test_containers_never_bring_braces_back():
    variables = {
        "bonus": {"granted": True, "amount": 100.0, "meta": {"type": "WELCOME"}},
        "history": [{"amount": 10}, {"amount": 20}],
        "none": {},
    }
    rendered = render("Bonus: {bonus} | History: {history} | {none}", variables)

    assert rendered == "Bonus: granted: true, amount: 100, meta: type: WELCOME | History: amount: 10, amount: 20 | "
    assert "{" not in rendered and "}" not in rendered


def test_exact_placeholder_keeps_its_type():
    variables = {"amount": 150, "user": {"id": "u-1"}}
    assert resolve("{amount}", variables) == 150
    assert resolve({"user_id": "{{user.id}}", "note": "for {user.id}"}, variables) == {
        "user_id": "u-1",
        "note": "for u-1",
    }
    assert resolve(["{amount}", 7], variables) == [150, 7]


def test_flat_dotted_key_wins_over_nested_walk():
    variables = {"contact.phone": "+100", "contact": {"phone": "+200"}}
    assert lookup(variables, "contact.phone") == "+100"


def test_list_indexes_are_walked():
    assert lookup({"items": [{"sku": "A"}, {"sku": "B"}]}, "items.1.sku") == "B"
    assert lookup({"items": []}, "items.3.sku", "none") == "none"


def test_local_scope_shadows_user_and_project():
    scope = build_scope({"greeting": "local"}, {"greeting": "user", "balance": 5}, {"greeting": "project", "brand": "Acme"})
    assert render("{greeting} {balance} {brand}", scope) == "local 5 Acme"
    assert lookup(scope, "local.balance") is None
