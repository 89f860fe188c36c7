import json

from auth import PasswordRecord
from config import SKIPPED_PASSWORD_KEY


class TestPasswordRecord:

    def test_first_run_has_no_password(self, auth):
        assert not auth.has_password()
        assert auth.read_record() is None
        assert not auth.verify_password("anything")

    def test_set_password_writes_salt_and_hash(self, auth, config):
        auth.set_password("hunter2")

        with open(config.auth_path, encoding="utf-8") as fh:
            raw = json.load(fh)
        assert set(raw) == {"salt", "hash"}
        assert "hunter2" not in json.dumps(raw)
        assert auth.verify_password("hunter2")
        assert not auth.verify_password("hunter3")
        assert not auth.is_password_skipped()

    def test_skip_password_uses_internal_key(self, auth, config):
        auth.skip_password()

        with open(config.auth_path, encoding="utf-8") as fh:
            raw = json.load(fh)
        assert raw["skipped"] is True
        assert auth.is_password_skipped()
        assert auth.verify_password(SKIPPED_PASSWORD_KEY)
        assert auth.skipped_password_key == SKIPPED_PASSWORD_KEY

    def test_corrupt_record_is_treated_as_missing(self, auth, config):
        with open(config.auth_path, "w", encoding="utf-8") as fh:
            fh.write("{not json")

        assert auth.has_password()
        assert auth.read_record() is None
        assert not auth.verify_password("hunter2")

    def test_write_record_round_trip(self, auth):
        record = auth.new_record("pw", skipped=True)
        auth.write_record(record)
        assert auth.read_record() == record
        assert isinstance(record, PasswordRecord)
