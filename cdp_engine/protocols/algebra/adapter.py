"""Algebra (QuickSwap V3) venue adapter."""
from __future__ import annotations

from ..uniswap_v3.adapter import UniswapV3Adapter
from . import parser as algebra_parser


class AlgebraAdapter(UniswapV3Adapter):
    """Same capabilities as Uniswap V3, Algebra field layout."""

    name = "algebra"
    parser = algebra_parser
