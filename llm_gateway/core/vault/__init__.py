from .vault import CredentialVault
from .key_material import validate_key_strength, generate_device_component, generate_random_component

__all__ = [
    'CredentialVault',
    'validate_key_strength',
    'generate_device_component',
    'generate_random_component',
]
