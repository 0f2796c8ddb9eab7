import pytest

from conftest import login


def create_board(client, name="Board"):
    r = client.post("/v1/boards", json={"name": name})
    assert r.status_code == 201
    return r.json()


def create_lane(client, board_id, title):
    r = client.post(f"/v1/boards/{board_id}/lanes", json={"title": title})
    assert r.status_code == 201
    return r.json()


def create_card(client, lane_id, title, **extra):
    r = client.post(f"/v1/lanes/{lane_id}/cards", json={"title": title, **extra})
    assert r.status_code == 201
    return r.json()


def lane_titles(client, board_id):
    board = client.get(f"/v1/boards/{board_id}").json()
    return {lane["title"]: [(c["title"], c["order"]) for c in lane["cards"]] for lane in board["lanes"]}


# === Auth ===


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/v1/boards"),
        ("post", "/v1/boards"),
        ("get", "/v1/boards/x"),
        ("delete", "/v1/boards/x"),
        ("post", "/v1/lanes/x:move"),
        ("patch", "/v1/cards/x"),
        ("delete", "/v1/checklist/x"),
        ("get", "/v1/users"),
    ],
)
def test_requires_login(client, method, path):
    kwargs = {"json": {}} if method in ("post", "patch") else {}
    r = getattr(client, method)(path, **kwargs)
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"


def test_login_creates_user_and_session(client, login_client):
    me = login(client, login_client, "U-bob", "Bob")
    assert me["name"] == "Bob"
    assert me["externalChatId"] == "U-bob"
    assert client.get("/v1/boards").status_code == 200


def test_login_redirects_to_dashboard(client, login_client):
    from taskboard.line import LineProfile

    login_client.profiles["U-1"] = LineProfile("U-1", "One")
    r = client.get("/v1/auth/line/callback", params={"code": "U-1"}, follow_redirects=False)
    assert r.headers["location"] == "http://localhost:3000/dashboard"


def test_second_login_updates_profile(client, login_client):
    first = login(client, login_client, "U-bob", "Bob")
    second = login(client, login_client, "U-bob", "Robert")
    assert first["id"] == second["id"]
    assert second["name"] == "Robert"


def test_login_without_code(client):
    r = client.get("/v1/auth/line/callback")
    assert r.status_code == 400


def test_login_with_rejected_code(client):
    r = client.get("/v1/auth/line/callback", params={"code": "bogus"})
    assert r.status_code == 502
    assert r.json()["code"] == "line_api_error"


def test_login_redirect_url(client):
    r = client.get("/v1/auth/line/login", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"].startswith("https://access.line.me/")


def test_logout(auth_client):
    assert auth_client.post("/v1/auth/logout").status_code == 204
    assert auth_client.get("/v1/boards").status_code == 401


# === Boards ===


def test_board_crud(auth_client):
    board = create_board(auth_client, "Sprint")
    boards = auth_client.get("/v1/boards").json()["boards"]
    assert [b["name"] for b in boards] == ["Sprint"]
    assert boards[0]["laneCount"] == 0

    r = auth_client.patch(f"/v1/boards/{board['id']}", json={"name": "Sprint 2"})
    assert r.json()["name"] == "Sprint 2"

    assert auth_client.delete(f"/v1/boards/{board['id']}").status_code == 204
    r = auth_client.get(f"/v1/boards/{board['id']}")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_boards_listed_newest_first(auth_client):
    create_board(auth_client, "First")
    create_board(auth_client, "Second")
    names = [b["name"] for b in auth_client.get("/v1/boards").json()["boards"]]
    assert names == ["Second", "First"]


def test_blank_board_name_is_invalid(auth_client):
    r = auth_client.post("/v1/boards", json={"name": ""})
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_input"


# === Lanes & cards ===


def test_card_round_trip_move(auth_client):
    board = create_board(auth_client)
    lane = create_lane(auth_client, board["id"], "Todo")
    a = create_card(auth_client, lane["id"], "A")
    create_card(auth_client, lane["id"], "B")
    create_card(auth_client, lane["id"], "C")

    r = auth_client.post(f"/v1/cards/{a['id']}:move", json={"position": 2})
    assert r.status_code == 200
    assert r.json()["order"] == 2
    assert lane_titles(auth_client, board["id"]) == {"Todo": [("B", 0), ("C", 1), ("A", 2)]}


def test_card_cross_lane_move(auth_client):
    board = create_board(auth_client)
    x = create_lane(auth_client, board["id"], "X")
    y = create_lane(auth_client, board["id"], "Y")
    create_card(auth_client, x["id"], "A")
    b = create_card(auth_client, x["id"], "B")
    create_card(auth_client, y["id"], "C")

    r = auth_client.post(f"/v1/cards/{b['id']}:move", json={"laneId": y["id"], "position": 0})
    assert r.json()["laneId"] == y["id"]
    assert lane_titles(auth_client, board["id"]) == {
        "X": [("A", 0)],
        "Y": [("B", 0), ("C", 1)],
    }


def test_card_move_validation(auth_client):
    board = create_board(auth_client)
    lane = create_lane(auth_client, board["id"], "Todo")
    a = create_card(auth_client, lane["id"], "A")
    assert auth_client.post(f"/v1/cards/{a['id']}:move", json={"position": -1}).status_code == 400
    r = auth_client.post(f"/v1/cards/{a['id']}:move", json={"laneId": "nope", "position": 0})
    assert r.status_code == 404


def test_card_update_and_delete(auth_client):
    board = create_board(auth_client)
    lane = create_lane(auth_client, board["id"], "Todo")
    create_card(auth_client, lane["id"], "A")
    b = create_card(auth_client, lane["id"], "B", priority="LOW")
    create_card(auth_client, lane["id"], "C")

    r = auth_client.patch(f"/v1/cards/{b['id']}", json={"priority": "HIGH", "description": "x"})
    assert r.json()["priority"] == "HIGH"
    assert r.json()["order"] == 1
    assert auth_client.patch(f"/v1/cards/{b['id']}", json={"priority": "URGENT"}).status_code == 400

    assert auth_client.delete(f"/v1/cards/{b['id']}").status_code == 204
    assert lane_titles(auth_client, board["id"]) == {"Todo": [("A", 0), ("C", 1)]}


def test_lane_move_rename_delete(auth_client):
    board = create_board(auth_client)
    todo = create_lane(auth_client, board["id"], "Todo")
    create_lane(auth_client, board["id"], "Doing")
    done = create_lane(auth_client, board["id"], "Done")

    r = auth_client.post(f"/v1/lanes/{done['id']}:move", json={"position": 0})
    assert r.json()["order"] == 0
    r = auth_client.patch(f"/v1/lanes/{todo['id']}", json={"title": "Backlog"})
    assert r.json()["title"] == "Backlog"
    assert r.json()["order"] == 1

    assert auth_client.delete(f"/v1/lanes/{todo['id']}").status_code == 204
    lanes = auth_client.get(f"/v1/boards/{board['id']}").json()["lanes"]
    assert [(lane["title"], lane["order"]) for lane in lanes] == [("Done", 0), ("Doing", 1)]


def test_board_priority_sort(auth_client):
    board = create_board(auth_client)
    lane = create_lane(auth_client, board["id"], "Todo")
    create_card(auth_client, lane["id"], "A", priority="LOW")
    create_card(auth_client, lane["id"], "B", priority="HIGH")
    cards = auth_client.get(f"/v1/boards/{board['id']}", params={"sort": "priority"}).json()["lanes"][0]["cards"]
    assert [c["title"] for c in cards] == ["B", "A"]
    assert auth_client.get(f"/v1/boards/{board['id']}", params={"sort": "title"}).status_code == 400


# === Checklist ===


def test_checklist_flow(auth_client, messenger):
    me = auth_client.get("/v1/auth/me").json()
    board = create_board(auth_client)
    lane = create_lane(auth_client, board["id"], "Todo")
    card = create_card(auth_client, lane["id"], "Launch")

    r = auth_client.post(f"/v1/cards/{card['id']}/checklist", json={"text": "Write notes"})
    assert r.status_code == 201
    item = r.json()
    assert item["completed"] is False
    assert item["assignedTo"] is None

    r = auth_client.patch(f"/v1/checklist/{item['id']}", json={"assignedToUserId": me["id"]})
    assert r.json()["assignedTo"]["name"] == "Alice"
    assert len(messenger.pushed) == 1
    to, text = messenger.pushed[0]
    assert to == me["externalChatId"]
    assert "Launch" in text and "Write notes" in text

    r = auth_client.patch(f"/v1/checklist/{item['id']}", json={"completed": True})
    assert r.json()["completed"] is True
    assert r.json()["assignedToUserId"] == me["id"]

    r = auth_client.patch(f"/v1/checklist/{item['id']}", json={"assignedToUserId": None})
    assert r.json()["assignedTo"] is None
    assert len(messenger.pushed) == 1

    assert auth_client.delete(f"/v1/checklist/{item['id']}").status_code == 204
    assert auth_client.delete(f"/v1/checklist/{item['id']}").status_code == 404


def test_assign_to_unknown_user(auth_client):
    board = create_board(auth_client)
    lane = create_lane(auth_client, board["id"], "Todo")
    card = create_card(auth_client, lane["id"], "Launch")
    r = auth_client.post(f"/v1/cards/{card['id']}/checklist", json={"text": "x", "assignedToUserId": "ghost"})
    assert r.status_code == 404


def test_list_users(client, login_client):
    login(client, login_client, "U-zed", "Zed")
    login(client, login_client, "U-amy", "Amy")
    users = client.get("/v1/users").json()["users"]
    assert [u["name"] for u in users] == ["Amy", "Zed"]
