# -*- coding: utf-8 -*-
import pytest

from long_mpc.parameters import CostWeights, MPCParameters


@pytest.fixture
def params():
    # Generous kernel time limit so results do not depend on machine speed
    return MPCParameters(qp_time_limit=10.0)


@pytest.fixture
def weights():
    return CostWeights()
