# -*- coding: utf-8 -*-
import math
import threading

import numpy as np
import pytest

from long_mpc.online_parameters import LatestValueBuffer, OnlineParameterFeed, predict_lead
from long_mpc.parameters import MPCParameters
from long_mpc.vehicle_state import OnlineParameters


class TestOnlineParameterFeed:
    def test_accepts_finite_update(self):
        feed = OnlineParameterFeed()
        assert feed.update(30.0, 12.0, 1.5)
        assert feed.current == OnlineParameters(30.0, 12.0, 1.5)
        assert not feed.input_degraded
        assert feed.accepted_updates == 1

    @pytest.mark.parametrize("values", [
        (math.nan, 12.0, 1.5),
        (30.0, math.inf, 1.5),
        (30.0, 12.0, -math.inf),
        (30.0, None, 1.5),
        ("far", 12.0, 1.5),
    ])
    def test_rejects_bad_input_and_keeps_previous(self, values):
        feed = OnlineParameterFeed()
        feed.update(30.0, 12.0, 1.5)
        assert not feed.update(*values)
        assert feed.input_degraded
        assert feed.rejected_updates == 1
        assert feed.current == OnlineParameters(30.0, 12.0, 1.5)

    def test_degraded_flag_clears_on_next_good_tick(self):
        feed = OnlineParameterFeed()
        feed.update(math.nan, 0.0, 1.5)
        assert feed.input_degraded
        assert feed.current is None
        feed.update(10.0, 0.0, 1.5)
        assert not feed.input_degraded

    @pytest.mark.parametrize("time_gap", [0.0, 0.05, 5.5])
    def test_time_gap_outside_range_is_rejected(self, time_gap):
        feed = OnlineParameterFeed(MPCParameters())
        assert not feed.update(30.0, 12.0, time_gap)
        assert feed.current is None

    def test_stage_parameters_before_any_update(self):
        with pytest.raises(RuntimeError):
            OnlineParameterFeed().stage_parameters()

    def test_unknown_prediction_mode(self):
        feed = OnlineParameterFeed()
        feed.update(30.0, 12.0, 1.5)
        with pytest.raises(ValueError):
            feed.stage_parameters(mode='ballistic')

    def test_hold_repeats_parameters_on_every_stage(self):
        params = MPCParameters()
        feed = OnlineParameterFeed(params)
        feed.update(30.0, 12.0, 1.8, lead_acceleration=-2.0)
        rows = feed.stage_parameters()
        assert rows.shape == (params.N + 1, 3)
        np.testing.assert_array_equal(rows, np.tile([30.0, 12.0, 1.8], (params.N + 1, 1)))

    def test_constant_velocity_mode_uses_lead_acceleration(self):
        params = MPCParameters(lead_prediction='constant_velocity')
        feed = OnlineParameterFeed(params)
        feed.update(30.0, 12.0, 1.8, lead_acceleration=-1.0)
        rows = feed.stage_parameters()
        assert rows.shape == (params.N + 1, 3)
        assert rows[0, 0] == pytest.approx(30.0)
        assert np.all(np.diff(rows[:, 1]) <= 0.0)
        assert rows[-1, 1] < 12.0
        np.testing.assert_allclose(rows[:, 2], 1.8)


class TestPredictLead:
    def test_zero_acceleration_is_constant_velocity(self):
        t_grid = MPCParameters().t_grid
        rows = predict_lead(10.0, 5.0, 0.0, 1.5, t_grid)
        np.testing.assert_allclose(rows[:, 1], 5.0)
        np.testing.assert_allclose(rows[:, 0], 10.0 + 5.0 * t_grid)

    def test_velocity_never_negative(self):
        t_grid = MPCParameters().t_grid
        rows = predict_lead(10.0, 1.0, -8.0, 1.5, t_grid)
        assert rows[:, 1].min() >= 0.0
        assert np.all(np.diff(rows[:, 0]) >= 0.0)

    def test_acceleration_decays(self):
        t_grid = np.linspace(0.0, 10.0, 101)
        rows = predict_lead(0.0, 10.0, 2.0, 1.5, t_grid)
        # almost no further speed gain late in the horizon
        assert rows[-1, 1] - rows[-20, 1] < 1e-6
        assert rows[-1, 1] > 10.0


class TestLatestValueBuffer:
    def test_empty(self):
        assert LatestValueBuffer().get() == (None, 0)

    def test_most_recent_wins(self):
        buffer = LatestValueBuffer()
        assert buffer.put("a") == 1
        assert buffer.put("b") == 2
        assert buffer.get() == ("b", 2)
        assert buffer.sequence == 2

    def test_concurrent_writer(self):
        buffer = LatestValueBuffer()
        count = 2000

        def writer():
            for i in range(count):
                buffer.put(i)

        thread = threading.Thread(target=writer)
        thread.start()
        seen = []
        while thread.is_alive():
            value, seq = buffer.get()
            if seq:
                # value and sequence are always read together
                assert value == seq - 1
                seen.append(seq)
        thread.join()
        assert buffer.get() == (count - 1, count)
        assert seen == sorted(seen)
