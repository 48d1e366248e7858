"""dohrelay package"""
