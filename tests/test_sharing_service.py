"""Tests for match grants and share requests."""

import pytest

from models import (
    Game,
    Permission,
    Player,
    ShareItemType,
    ShareRequestStatus,
    SharedGame,
    SharedMatch,
    SharedMatchPlayer,
    SharedPlayer,
    SharedScoresheet,
)
from core.canonical_resolver import CanonicalResolver
from core.exceptions import (
    MatchNotFound,
    ShareItemNotFound,
    ShareRequestAlreadyResolved,
    ShareRequestNotFound,
)
from services.sharing_service import (
    accept_share_request,
    create_share_request,
    grant_match_share,
    reject_share_request,
    revoke_match_share,
)
from tests.factories import build_match, share


class TestMatchGrants:
    """Direct match grants."""

    def test_grant_creates_participant_rows(self, db):
        fixture = build_match(db)
        grant = share(db, fixture, permission=Permission.EDIT)
        rows = db.query(SharedMatchPlayer).filter(SharedMatchPlayer.shared_match_id == grant.id).all()
        assert {row.match_player_id for row in rows} == {mp.id for mp in fixture.players.values()}
        assert all(row.permission is None for row in rows)

    def test_regrant_updates_permission(self, db):
        fixture = build_match(db)
        share(db, fixture, permission=Permission.VIEW, player_permissions={"A": Permission.EDIT})
        share(db, fixture, permission=Permission.EDIT)

        grants = db.query(SharedMatch).filter(SharedMatch.match_id == fixture.match.id).all()
        assert len(grants) == 1
        assert grants[0].permission == Permission.EDIT
        overrides = db.query(SharedMatchPlayer).filter(SharedMatchPlayer.permission.isnot(None)).count()
        assert overrides == 0

    def test_only_owner_can_grant(self, db):
        fixture = build_match(db)
        with pytest.raises(MatchNotFound):
            grant_match_share(db, "mallory", fixture.match.id, "bob", Permission.EDIT)

    def test_revoke_removes_access(self, db):
        fixture = build_match(db)
        share(db, fixture, permission=Permission.EDIT)

        assert revoke_match_share(db, "alice", fixture.match.id, "bob") is True
        assert db.query(SharedMatchPlayer).count() == 0
        with pytest.raises(MatchNotFound):
            CanonicalResolver.resolve_match(db, "bob", fixture.shared)

    def test_revoke_without_grant(self, db):
        fixture = build_match(db)
        assert revoke_match_share(db, "alice", fixture.match.id, "bob") is False

    def test_revoke_keeps_gameplay_data(self, db):
        fixture = build_match(db)
        share(db, fixture)
        revoke_match_share(db, "alice", fixture.match.id, "bob")
        db.expire_all()
        assert len(fixture.match.match_players) == 3


class TestShareRequests:
    """Pending share requests and their children."""

    def test_create_requires_ownership(self, db):
        fixture = build_match(db)
        with pytest.raises(ShareItemNotFound):
            create_share_request(db, "bob", "carol", ShareItemType.MATCH, fixture.match.id)

    def test_create_with_unknown_parent(self, db):
        fixture = build_match(db)
        with pytest.raises(ShareRequestNotFound):
            create_share_request(db, "alice", "bob", ShareItemType.MATCH, fixture.match.id, parent_id=999)

    def test_accept_match_request(self, db):
        fixture = build_match(db)
        request = create_share_request(
            db, "alice", "bob", ShareItemType.MATCH, fixture.match.id, Permission.EDIT
        )
        accepted = accept_share_request(db, request.id, "bob")

        assert accepted.status == ShareRequestStatus.ACCEPTED
        resolved = CanonicalResolver.resolve_match(db, "bob", fixture.shared)
        assert resolved.permission == Permission.EDIT

    def test_accept_game_bundle(self, db):
        fixture = build_match(db)
        game_id = fixture.match.game_id
        player_id = fixture.players["A"].player_id

        parent = create_share_request(db, "alice", "bob", ShareItemType.GAME, game_id)
        # Match child is created first; players are still granted before it
        create_share_request(db, "alice", "bob", ShareItemType.MATCH, fixture.match.id, parent_id=parent.id)
        create_share_request(
            db, "alice", "bob", ShareItemType.SCORESHEET, fixture.match.scoresheet_id, parent_id=parent.id
        )
        create_share_request(db, "alice", "bob", ShareItemType.PLAYER, player_id, parent_id=parent.id)

        own_game = Game(name="My Catan", created_by="bob")
        db.add(own_game)
        db.commit()

        accept_share_request(db, parent.id, "bob", linked_game_id=own_game.id)

        shared_game = db.query(SharedGame).one()
        assert shared_game.game_id == game_id
        assert shared_game.linked_game_id == own_game.id
        assert db.query(SharedScoresheet).one().shared_game_id == shared_game.id

        grant = db.query(SharedMatch).one()
        assert grant.shared_game_id == shared_game.id
        shared_player = db.query(SharedPlayer).one()
        smp = db.query(SharedMatchPlayer).filter(
            SharedMatchPlayer.match_player_id == fixture.players["A"].id
        ).one()
        assert smp.shared_player_id == shared_player.id

        db.expire_all()
        assert all(child.status == ShareRequestStatus.ACCEPTED for child in parent.children)

    def test_link_to_foreign_game_rejected(self, db):
        fixture = build_match(db)
        request = create_share_request(db, "alice", "bob", ShareItemType.GAME, fixture.match.game_id)
        with pytest.raises(ShareItemNotFound):
            accept_share_request(db, request.id, "bob", linked_game_id=fixture.match.game_id)

        db.expire_all()
        assert request.status == ShareRequestStatus.PENDING

    def test_only_recipient_can_accept(self, db):
        fixture = build_match(db)
        request = create_share_request(db, "alice", "bob", ShareItemType.MATCH, fixture.match.id)
        with pytest.raises(ShareRequestNotFound):
            accept_share_request(db, request.id, "carol")

    def test_reject_resolves_children(self, db):
        fixture = build_match(db)
        parent = create_share_request(db, "alice", "bob", ShareItemType.GAME, fixture.match.game_id)
        child = create_share_request(
            db, "alice", "bob", ShareItemType.MATCH, fixture.match.id, parent_id=parent.id
        )

        reject_share_request(db, parent.id, "bob")

        db.expire_all()
        assert parent.status == ShareRequestStatus.REJECTED
        assert child.status == ShareRequestStatus.REJECTED
        assert db.query(SharedMatch).count() == 0

    def test_resolved_request_cannot_be_reused(self, db):
        fixture = build_match(db)
        request = create_share_request(db, "alice", "bob", ShareItemType.MATCH, fixture.match.id)
        accept_share_request(db, request.id, "bob")

        with pytest.raises(ShareRequestAlreadyResolved):
            accept_share_request(db, request.id, "bob")
        with pytest.raises(ShareRequestAlreadyResolved):
            reject_share_request(db, request.id, "bob")

    def test_child_for_other_recipient_rejected(self, db):
        fixture = build_match(db)
        parent = create_share_request(db, "alice", "bob", ShareItemType.GAME, fixture.match.game_id)
        with pytest.raises(ShareRequestNotFound):
            create_share_request(
                db, "alice", "carol", ShareItemType.MATCH, fixture.match.id, parent_id=parent.id
            )
        db.expire_all()
        assert parent.children == []


class TestRepeatedShares:
    """Accepting a share for an item already shared updates the existing grant."""

    def test_accept_same_player_share_twice(self, db):
        fixture = build_match(db)
        player_id = fixture.players["A"].player_id
        first = create_share_request(db, "alice", "bob", ShareItemType.PLAYER, player_id)
        accept_share_request(db, first.id, "bob")
        second = create_share_request(db, "alice", "bob", ShareItemType.PLAYER, player_id, Permission.EDIT)

        accepted = accept_share_request(db, second.id, "bob")

        assert accepted.status == ShareRequestStatus.ACCEPTED
        grant = db.query(SharedPlayer).one()
        assert grant.permission == Permission.EDIT

    def test_repeat_player_share_keeps_local_link(self, db):
        fixture = build_match(db)
        player_id = fixture.players["A"].player_id
        first = create_share_request(db, "alice", "bob", ShareItemType.PLAYER, player_id)
        accept_share_request(db, first.id, "bob")
        own_player = Player(name="My A", created_by="bob")
        db.add(own_player)
        db.flush()
        db.query(SharedPlayer).one().linked_player_id = own_player.id
        db.commit()

        second = create_share_request(db, "alice", "bob", ShareItemType.PLAYER, player_id)
        accept_share_request(db, second.id, "bob")

        assert db.query(SharedPlayer).one().linked_player_id == own_player.id

    def test_accept_same_game_share_twice(self, db):
        fixture = build_match(db)
        own_game = Game(name="My Catan", created_by="bob")
        db.add(own_game)
        db.commit()

        first = create_share_request(db, "alice", "bob", ShareItemType.GAME, fixture.match.game_id)
        accept_share_request(db, first.id, "bob")
        second = create_share_request(
            db, "alice", "bob", ShareItemType.GAME, fixture.match.game_id, Permission.EDIT
        )
        accept_share_request(db, second.id, "bob", linked_game_id=own_game.id)

        grant = db.query(SharedGame).one()
        assert grant.permission == Permission.EDIT
        assert grant.linked_game_id == own_game.id

    def test_bundle_with_previously_shared_children(self, db):
        fixture = build_match(db)
        player_id = fixture.players["A"].player_id
        scoresheet_id = fixture.match.scoresheet_id

        for item_type, item_id in ((ShareItemType.PLAYER, player_id), (ShareItemType.SCORESHEET, scoresheet_id)):
            earlier = create_share_request(db, "alice", "bob", item_type, item_id)
            accept_share_request(db, earlier.id, "bob")

        parent = create_share_request(db, "alice", "bob", ShareItemType.GAME, fixture.match.game_id)
        create_share_request(db, "alice", "bob", ShareItemType.PLAYER, player_id, parent_id=parent.id)
        create_share_request(db, "alice", "bob", ShareItemType.SCORESHEET, scoresheet_id, parent_id=parent.id)
        create_share_request(db, "alice", "bob", ShareItemType.MATCH, fixture.match.id, parent_id=parent.id)

        accept_share_request(db, parent.id, "bob")

        shared_game = db.query(SharedGame).one()
        assert db.query(SharedPlayer).count() == 1
        assert db.query(SharedScoresheet).one().shared_game_id == shared_game.id
        smp = db.query(SharedMatchPlayer).filter(
            SharedMatchPlayer.match_player_id == fixture.players["A"].id
        ).one()
        assert smp.shared_player_id == db.query(SharedPlayer).one().id
