"""Egress policy: domain and IP address filters."""