"""Storefront Order Service — 価格計算・割引適用・注文ライフサイクル"""
