"""
FC roster, fleet type and doctrine API tests, plus the role checks that
guard them when the auth bypass is off.
"""

import pytest


# ── FC roster ─────────────────────────────────────────────────────────────

class TestFcRoster:
    def test_create_and_get(self, client):
        r = client.post("/api/admin/fcs", json={
            "main_character_id": 92000001,
            "main_character_name": "Lead Bomber",
            "rank": "SFC",
            "status": "Active",
            "additional_alts": [{"character_id": 92000002, "character_name": "Scout Alt"}],
        })
        assert r.status_code == 201
        fc = r.json()["fc"]
        assert fc["additional_alts"] == [{"character_id": 92000002, "character_name": "Scout Alt"}]
        assert fc["is_admin"] is False

        r = client.get(f"/api/admin/fcs/{fc['id']}")
        assert r.json()["fc"]["main_character_name"] == "Lead Bomber"

    def test_required_fields(self, client):
        r = client.post("/api/admin/fcs", json={"main_character_name": "Nobody"})
        assert r.status_code == 400
        assert r.json()["error"] == "Missing required fields: main_character_id, main_character_name, rank, status"

    def test_invalid_rank(self, client):
        r = client.post("/api/admin/fcs", json={
            "main_character_id": 1, "main_character_name": "X", "rank": "Admiral", "status": "Active",
        })
        assert r.status_code == 400

    def test_duplicate_main(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=92000001)
        r = client.post("/api/admin/fcs", json={
            "main_character_id": 92000001, "main_character_name": "Again", "rank": "FC", "status": "Active",
        })
        assert r.status_code == 409

    def test_list_orders_by_rank_then_name(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=1, main_character_name="Zed", rank="JFC")
        helpers.create_fc(api_db, main_character_id=2, main_character_name="Amy", rank="FC")
        helpers.create_fc(api_db, main_character_id=3, main_character_name="Bob", rank="SFC")
        helpers.create_fc(api_db, main_character_id=4, main_character_name="Cat", rank="SFC")
        data = client.get("/api/admin/fcs").json()
        assert [f["main_character_name"] for f in data["fcs"]] == ["Bob", "Cat", "Amy", "Zed"]
        assert data["total"] == 4

    def test_search(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=1, main_character_name="Torp Lord")
        helpers.create_fc(api_db, main_character_id=2, main_character_name="Cloaky Cat")
        fcs = client.get("/api/admin/fcs", params={"search": "TORP"}).json()["fcs"]
        assert [f["main_character_name"] for f in fcs] == ["Torp Lord"]

    def test_update_keeps_required_columns_when_null(self, client, api_db, helpers):
        fc_id = helpers.create_fc(api_db, rank="JFC")
        r = client.put(f"/api/admin/fcs/{fc_id}", json={"rank": None, "notes": "Promising"})
        assert r.status_code == 200
        fc = r.json()["fc"]
        assert fc["rank"] == "JFC"
        assert fc["notes"] == "Promising"

    def test_soft_delete(self, client, api_db, helpers):
        fc_id = helpers.create_fc(api_db)
        r = client.delete(f"/api/admin/fcs/{fc_id}")
        assert r.status_code == 200
        assert client.get(f"/api/admin/fcs/{fc_id}").status_code == 404
        assert client.delete(f"/api/admin/fcs/{fc_id}").status_code == 404
        status = api_db.execute("SELECT status FROM fleet_commanders WHERE id=?", (fc_id,)).fetchone()[0]
        assert status == "Deleted"


# ── Auth and the FC management matrix ─────────────────────────────────────

def _login(client, api_db, helpers, character_id: int, name: str = "Someone") -> None:
    token = helpers.create_session_token(api_db, character_id, name)
    client.cookies.set("session_token", token)


@pytest.mark.usefixtures("auth_enforced")
class TestRoleChecks:
    def test_anonymous_is_rejected(self, client):
        r = client.get("/api/admin/fleets")
        assert r.status_code == 401
        assert r.json() == {"success": False, "error": "Authentication required"}

    def test_plain_user_is_forbidden(self, client, api_db, helpers):
        _login(client, api_db, helpers, 94000001)
        assert client.get("/api/admin/fleets").status_code == 403

    def test_verify_reports_roles(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=94000002, access_level="FC")
        _login(client, api_db, helpers, 94000002, "Fleet Boss")
        data = client.get("/api/auth/verify").json()
        assert data["authenticated"] is True
        assert data["user"]["roles"] == ["user", "FC"]
        assert data["user"]["is_authorized"] is True

    def test_corp_alt_inherits_access_level(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=94000003, bb_corp_alt_id=94000004, access_level="Accountant")
        _login(client, api_db, helpers, 94000004)
        assert client.get("/api/admin/srp").status_code == 200

    def test_admin_from_environment(self, client, api_db, helpers, monkeypatch):
        monkeypatch.setenv("ADMIN_CHARACTER_IDS", "94000005, 94000006")
        _login(client, api_db, helpers, 94000006)
        assert client.get("/api/admin/bans").status_code == 200

    def test_logout_ends_session(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=94000007, access_level="FC")
        token = helpers.create_session_token(api_db, 94000007)
        client.cookies.set("session_token", token)
        assert client.post("/api/auth/logout").status_code == 200

        # Replaying the old token after logout finds no session.
        client.cookies.set("session_token", token)
        assert client.get("/api/auth/verify").json()["authenticated"] is False

    def test_council_cannot_edit_council(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=94000010, access_level="Council")
        plain = helpers.create_fc(api_db, main_character_id=94000011)
        peer = helpers.create_fc(api_db, main_character_id=94000012, access_level="Council")
        _login(client, api_db, helpers, 94000010)

        assert client.put(f"/api/admin/fcs/{plain}", json={"notes": "ok"}).status_code == 200
        assert client.put(f"/api/admin/fcs/{peer}", json={"notes": "nope"}).status_code == 403

    def test_election_officer_cannot_edit_admin(self, client, api_db, helpers, monkeypatch):
        monkeypatch.setenv("ADMIN_CHARACTER_ID", "94000021")
        helpers.create_fc(api_db, main_character_id=94000020, access_level="Election Officer")
        admin_fc = helpers.create_fc(api_db, main_character_id=94000021)
        council_fc = helpers.create_fc(api_db, main_character_id=94000022, access_level="Council")
        _login(client, api_db, helpers, 94000020)

        assert client.put(f"/api/admin/fcs/{admin_fc}", json={"notes": "x"}).status_code == 403
        assert client.put(f"/api/admin/fcs/{council_fc}", json={"notes": "x"}).status_code == 200

    def test_council_cannot_grant_admin(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=94000030, access_level="Council")
        _login(client, api_db, helpers, 94000030)
        r = client.post("/api/admin/fcs", json={
            "main_character_id": 94000031,
            "main_character_name": "Upstart",
            "rank": "FC",
            "status": "Active",
            "access_level": "admin",
        })
        assert r.status_code == 403

    def test_fc_cannot_delete_fcs(self, client, api_db, helpers):
        helpers.create_fc(api_db, main_character_id=94000040, access_level="FC")
        target = helpers.create_fc(api_db, main_character_id=94000041)
        _login(client, api_db, helpers, 94000040)
        assert client.delete(f"/api/admin/fcs/{target}").status_code == 403

    def test_only_fleet_fc_or_manager_adds_participants(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db)
        own_fc = helpers.create_fc(api_db, main_character_id=94000050, access_level="FC")
        helpers.create_fc(api_db, main_character_id=94000051, access_level="FC")
        fleet_id = helpers.create_fleet(api_db, ft, own_fc)
        body = {"fleet_id": fleet_id, "character_id": 1, "character_name": "Hunter"}

        _login(client, api_db, helpers, 94000051)
        r = client.post("/api/admin/fleet-participants", json=body)
        assert r.status_code == 403
        assert r.json()["error"] == "Only the fleet FC or Council can manage participants"

        _login(client, api_db, helpers, 94000050)
        assert client.post("/api/admin/fleet-participants", json=body).status_code == 201


# ── Fleet types ───────────────────────────────────────────────────────────

class TestFleetTypes:
    def test_create_and_list_with_counts(self, client, api_db, helpers):
        r = client.post("/api/admin/fleet-types", json={"name": "Bombers", "display_order": 1})
        assert r.status_code == 201
        ft = r.json()["fleet_type"]
        helpers.create_doctrine(api_db, ft["id"], "Active fit")
        helpers.create_doctrine(api_db, ft["id"], "Old fit", is_active=False)

        types = client.get("/api/admin/fleet-types").json()["fleet_types"]
        assert types[0]["doctrine_count"] == 2
        assert types[0]["active_doctrine_count"] == 1

        types = client.get("/api/admin/fleet-types", params={"skip_counts": True}).json()["fleet_types"]
        assert "doctrine_count" not in types[0]

    def test_inactive_hidden_by_default(self, client, api_db, helpers):
        helpers.create_fleet_type(api_db, "Retired", is_active=False)
        assert client.get("/api/admin/fleet-types").json()["fleet_types"] == []
        listed = client.get("/api/admin/fleet-types", params={"include_inactive": True}).json()["fleet_types"]
        assert [t["name"] for t in listed] == ["Retired"]

    def test_name_required_and_unique(self, client, api_db, helpers):
        assert client.post("/api/admin/fleet-types", json={"name": "  "}).status_code == 400
        helpers.create_fleet_type(api_db, "Bombers")
        r = client.post("/api/admin/fleet-types", json={"name": "Bombers"})
        assert r.status_code == 409
        assert r.json()["error"] == "Fleet type with this name already exists"

    def test_update(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db, "Bombers")
        r = client.put(f"/api/admin/fleet-types/{ft}", json={"is_active": False})
        assert r.status_code == 200
        assert r.json()["fleet_type"]["is_active"] is False
        assert client.put(f"/api/admin/fleet-types/{ft}", json={}).status_code == 400

    def test_delete_cascades_doctrines(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db, "Bombers")
        helpers.create_doctrine(api_db, ft, "One")
        helpers.create_doctrine(api_db, ft, "Two")
        r = client.delete(f"/api/admin/fleet-types/{ft}")
        assert r.status_code == 200
        assert r.json()["message"] == 'Fleet type "Bombers" and 2 doctrine(s) deleted'
        assert api_db.execute("SELECT COUNT(*) FROM doctrines").fetchone()[0] == 0

    def test_delete_blocked_by_fleets(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db, "Bombers")
        helpers.create_fleet(api_db, ft, helpers.create_fc(api_db))
        assert client.delete(f"/api/admin/fleet-types/{ft}").status_code == 409


# ── Doctrines ─────────────────────────────────────────────────────────────

class TestDoctrines:
    def _create(self, client, fleet_type_id: int, **extra):
        body = {
            "fleet_type_id": fleet_type_id,
            "name": "Purifier Torp",
            "ship_type_id": 12038,
            "ship_name": "Purifier",
            "high_slots": 4,
            "high_slot_modules": [{"type_id": 34294, "name": "Polarized Torpedo Launcher"}],
            **extra,
        }
        return client.post("/api/admin/doctrines", json=body)

    def test_create_and_fetch(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db)
        r = self._create(client, ft)
        assert r.status_code == 201
        doctrine = r.json()["doctrine"]
        assert doctrine["fleet_type_name"] == "Bombers"
        assert doctrine["high_slot_modules"][0]["type_id"] == 34294
        assert doctrine["cargo_items"] == []

        single = client.get("/api/admin/doctrines", params={"id": doctrine["id"]}).json()["doctrine"]
        assert single["name"] == "Purifier Torp"

    def test_required_fields(self, client):
        r = client.post("/api/admin/doctrines", json={"name": "No type"})
        assert r.status_code == 400
        assert r.json()["error"] == "fleet_type_id, name, and ship_type_id are required"

    def test_unknown_fleet_type(self, client):
        assert self._create(client, 999).status_code == 404

    def test_duplicate_name(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db)
        assert self._create(client, ft).status_code == 201
        assert self._create(client, ft).status_code == 409

    def test_update_fitting(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db)
        doctrine_id = self._create(client, ft).json()["doctrine"]["id"]
        r = client.put(f"/api/admin/doctrines/{doctrine_id}", json={
            "cargo_items": [{"type_id": 2203, "name": "Nanite Repair Paste", "quantity": 50}],
            "notes": "Bring paste",
        })
        assert r.status_code == 200
        doctrine = r.json()["doctrine"]
        assert doctrine["cargo_items"][0]["quantity"] == 50
        assert doctrine["notes"] == "Bring paste"
        assert doctrine["high_slots"] == 4

    def test_hull_is_fixed_after_creation(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db)
        doctrine_id = self._create(client, ft).json()["doctrine"]["id"]
        r = client.put(f"/api/admin/doctrines/{doctrine_id}", json={"ship_type_id": 12034, "high_slots": 5})
        assert r.status_code == 400
        assert r.json()["error"] == (
            "Cannot change high_slots, ship_type_id after creation; create a new doctrine instead"
        )

    def test_list_by_fleet_type_hides_inactive(self, client, api_db, helpers):
        ft = helpers.create_fleet_type(api_db)
        helpers.create_doctrine(api_db, ft, "Live")
        helpers.create_doctrine(api_db, ft, "Retired", is_active=False)
        names = [d["name"] for d in client.get("/api/admin/doctrines", params={"fleet_type_id": ft}).json()["doctrines"]]
        assert names == ["Live"]

    def test_delete(self, client, api_db, helpers):
        doctrine_id = helpers.create_doctrine(api_db, helpers.create_fleet_type(api_db), "Gone")
        r = client.delete(f"/api/admin/doctrines/{doctrine_id}")
        assert r.json()["message"] == 'Doctrine "Gone" deleted'
        assert client.get("/api/admin/doctrines", params={"id": doctrine_id}).status_code == 404


class TestPublicDoctrines:
    def test_grouped_by_active_fleet_type(self, client, api_db, helpers):
        bombers = helpers.create_fleet_type(api_db, "Bombers", display_order=2)
        hunters = helpers.create_fleet_type(api_db, "Hunters", display_order=1)
        retired = helpers.create_fleet_type(api_db, "Retired", is_active=False)
        helpers.create_doctrine(api_db, bombers, "Purifier Torp")
        helpers.create_doctrine(api_db, bombers, "Old", is_active=False)
        helpers.create_doctrine(api_db, hunters, "Hound Hunt", ship_type_id=12034)
        helpers.create_doctrine(api_db, retired, "Hidden")

        groups = client.get("/api/public/doctrines").json()["fleet_types"]
        assert [g["fleet_type_name"] for g in groups] == ["Hunters", "Bombers"]
        assert [d["name"] for d in groups[1]["doctrines"]] == ["Purifier Torp"]
        assert "fleet_type_name" not in groups[1]["doctrines"][0]
