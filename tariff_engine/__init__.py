"""
Insurance Coverage & Tariff Calculation Engine.

Turns a medical service into a price and splits it between the primary
insurer, supplementary insurers and the patient.
"""

__version__ = "0.1.0"
