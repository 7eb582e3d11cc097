import importlib.util
from pathlib import Path

import pytest

from authcore.service.credentials import secret_scheme

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "hash_admin_secret.py"


@pytest.fixture(scope="module")
def script():
    spec = importlib.util.spec_from_file_location("hash_admin_secret", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestHashAdminSecret:
    def test_prints_argon2_hash(self, script, capsys):
        assert script.main(["--password", "Sturdy-Passw0rd"]) == 0
        line = capsys.readouterr().out.strip()
        assert line.startswith("ADMIN_PASSWORD=")
        assert secret_scheme(line.split("=", 1)[1]) == "argon2"

    def test_bcrypt_hash_then_check(self, script, capsys):
        assert script.main(["--password", "Sturdy-Passw0rd", "--scheme", "bcrypt"]) == 0
        hashed = capsys.readouterr().out.strip().split("=", 1)[1]
        assert secret_scheme(hashed) == "bcrypt"

        assert script.main(["--password", "Sturdy-Passw0rd", "--check", hashed]) == 0
        assert script.main(["--password", "other-password", "--check", hashed]) == 2

    def test_check_rejects_plaintext(self, script):
        assert script.main(["--password", "x", "--check", "not-a-hash"]) == 1

    def test_weak_password_refused(self, script, capsys):
        assert script.main(["--password", "short"]) == 1
        assert "ADMIN_PASSWORD=" not in capsys.readouterr().out

    @pytest.mark.parametrize(
        "password,ok",
        [
            ("Sturdy-Passw0rd", True),
            ("alllowercaseletters", False),
            ("Short1!", False),
            ("lowercase-with-digits-123", True),
        ],
    )
    def test_validate_password(self, script, password, ok):
        assert script.validate_password(password) is ok
