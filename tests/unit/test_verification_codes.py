"""
Unit tests for verification code generation and checking.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from carpool.errors import CodeExpired, InvalidCode, InvalidTransition, NotAuthorized
from carpool.models.ride import Ride
from carpool.services.verification import (
    _check_code,
    clear_codes,
    generate_code,
    generate_completion_code,
)

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class TestGenerateCode:
    def test_start_code_is_four_digits(self):
        for _ in range(200):
            code = generate_code(4)
            assert len(code) == 4 and code.isdigit()

    def test_completion_code_is_six_digits(self):
        for _ in range(200):
            code = generate_code(6)
            assert len(code) == 6 and code.isdigit()


class TestCheckCode:
    def test_match(self):
        _check_code("4821", NOW + timedelta(minutes=5), "4821", NOW)

    def test_mismatch(self):
        with pytest.raises(InvalidCode):
            _check_code("4821", NOW + timedelta(minutes=5), "4822", NOW)

    def test_cleared_code_is_invalid(self):
        with pytest.raises(InvalidCode):
            _check_code(None, None, "4821", NOW)

    def test_expired(self):
        with pytest.raises(CodeExpired):
            _check_code("4821", NOW - timedelta(seconds=1), "4821", NOW)

    def test_mismatch_wins_over_expiry(self):
        with pytest.raises(InvalidCode):
            _check_code("4821", NOW - timedelta(minutes=1), "0000", NOW)

    def test_naive_expiry_is_read_as_utc(self):
        naive = (NOW + timedelta(minutes=1)).replace(tzinfo=None)
        _check_code("4821", naive, "4821", NOW)


class TestCompletionCode:
    def _ride(self, status="STARTED"):
        return Ride(id="ride-1", driver_id="driver-1", price=Decimal("30.00"), status=status)

    def test_issued_for_started_ride(self):
        ride = self._ride()
        code, expires_at = generate_completion_code(ride, "driver-1", NOW)
        assert ride.completion_code == code
        assert expires_at == NOW + timedelta(hours=24)

    def test_reissue_replaces_previous(self):
        ride = self._ride()
        generate_completion_code(ride, "driver-1", NOW)
        second, _ = generate_completion_code(ride, "driver-1", NOW + timedelta(minutes=1))
        assert ride.completion_code == second
        assert ride.completion_code_issued_at == NOW + timedelta(minutes=1)

    def test_open_ride_has_no_completion_code(self):
        with pytest.raises(InvalidTransition):
            generate_completion_code(self._ride(status="OPEN"), "driver-1", NOW)

    def test_passenger_cannot_issue(self):
        with pytest.raises(NotAuthorized):
            generate_completion_code(self._ride(), "passenger-1", NOW)

    def test_clear_codes(self):
        ride = self._ride()
        ride.start_code = "1234"
        generate_completion_code(ride, "driver-1", NOW)
        clear_codes(ride)
        assert ride.start_code is None
        assert ride.completion_code is None
        assert ride.completion_code_expires_at is None
