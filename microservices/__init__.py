"""Delivery platform microservices"""
