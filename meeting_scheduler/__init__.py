"""Meeting scheduling negotiation engine"""
