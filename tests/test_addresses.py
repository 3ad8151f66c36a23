from models.address import Address
from app.services.address_service import get_default_address, get_owned_address, set_default_address


def test_single_default_per_user(app, login, make_address):
    user_id, _ = login()
    first = make_address(user_id, is_default=True)
    second = make_address(user_id)
    with app.app_context():
        assert set_default_address(user_id, second).id == second
        defaults = Address.query.filter_by(user_id=user_id, is_default=True).all()
        assert [a.id for a in defaults] == [second]
        assert get_default_address(user_id).id == second
        assert get_owned_address(user_id, first).is_default is False


def test_cannot_default_someone_elses_address(app, login, make_address):
    user_id, _ = login()
    other_id, _ = login("other@example.com")
    mine = make_address(user_id, is_default=True)
    theirs = make_address(other_id)
    with app.app_context():
        assert set_default_address(user_id, theirs) is None
        assert get_owned_address(user_id, theirs) is None
        assert get_default_address(user_id).id == mine
