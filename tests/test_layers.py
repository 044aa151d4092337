from __future__ import annotations

import numpy as np
import pytest

from digitscope.inference.types import Tensor
from digitscope.visualize.layers import (
    LAYER_GROUPS,
    available_layers,
    describe_layer,
    display_name,
    group_of,
    navigate_channel,
    navigate_layer,
)


def _acts(*names: str) -> dict[str, Tensor]:
    t = Tensor.from_array(np.zeros((1, 2, 2, 2), dtype=np.float32))
    return {n: t for n in names}


def test_available_layers_follow_group_order() -> None:
    acts = _acts("conv2", "conv1_bn", "conv1", "features_flat", "conv3_act")
    assert available_layers(acts) == ["conv1", "conv2", "conv3_act"]
    assert available_layers({}) == []


def test_navigate_layer_wraps() -> None:
    acts = _acts("conv1", "conv1_act", "conv2")
    assert navigate_layer("conv1", "next", acts) == "conv1_act"
    assert navigate_layer("conv2", "next", acts) == "conv1"
    assert navigate_layer("conv1", "prev", acts) == "conv2"
    assert navigate_layer("conv3", "next", acts) is None


def test_navigate_channel_wraps() -> None:
    assert navigate_channel(0, 16, "prev") == 15
    assert navigate_channel(15, 16, "next") == 0
    assert navigate_channel(3, 16, "next") == 4
    assert navigate_channel(0, 1, "next") == 0
    with pytest.raises(ValueError):
        navigate_channel(16, 16, "next")
    with pytest.raises(ValueError):
        navigate_channel(0, 0, "prev")


def test_layer_metadata() -> None:
    assert [g.name for g in LAYER_GROUPS][0] == "Convolution Layer 1"
    grp = group_of("conv2_pool")
    assert grp is not None and grp.name == "Convolution Layer 2"
    assert group_of("features_flat") is None
    assert describe_layer("conv1").startswith("First convolutional layer")
    assert describe_layer("mystery") == "Layer visualization"
    assert display_name("conv1_pool") == "conv1 pool"
