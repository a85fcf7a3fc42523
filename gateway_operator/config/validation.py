"""
Module to validate values in a loaded config against the type and bound
declarations in config_validation.yaml
"""

# Standard
from typing import Any, Dict, List, Optional, Union
import abc

# First Party
import aconfig
import alog

# Local
from ..utils import NESTED_DICT_DELIM, nested_get

log = alog.use_channel("CONFG")


## Public ######################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get a list of any params that are invalid

    Args:
        config:  aconfig.Config
            The parsed config with any override values
        validation_config:  aconfig.Config
            The parallel config holding validation setup

    Returns:
        invalid_params:  List[str]
            A list of all string keys for parameters that fail validation
    """
    invalid_params = []
    for val_key, validator in _parse_validation_config(validation_config).items():
        if not validator.validate(nested_get(config, val_key)):
            log.warning("Found invalid config key [%s]", val_key)
            invalid_params.append(val_key)
    return invalid_params


## Validators ##################################################################

# pylint: disable=too-few-public-methods


class _Parameter(abc.ABC):
    """A declared parameter with a set of accepted types and a value check"""

    TYPE_KEY = None
    TYPES = ()

    def __init__(self, optional: bool = False):
        self.optional = optional

    def validate(self, value: Any) -> bool:
        """Check the type, then the value"""
        if self.optional and value is None:
            return True
        # bool is an int subclass, so only accept it where bool is declared
        if isinstance(value, bool) and bool not in self.TYPES:
            log.warning("Invalid type <%s>", type(value))
            return False
        if not isinstance(value, self.TYPES):
            log.warning("Invalid type <%s>", type(value))
            return False
        valid = self._validate_value(value)
        if not valid:
            log.warning("Invalid value [%s]", value)
        return valid

    @abc.abstractmethod
    def _validate_value(self, value: Any) -> bool:
        """Type-specific value validation"""


class _NumberParameter(_Parameter):
    """Number with optional inclusive bounds"""

    TYPE_KEY = "number"
    TYPES = (int, float)

    def __init__(
        self,
        *,
        min: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        max: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min = min
        self._max = max

    def _validate_value(self, value: Union[int, float]) -> bool:
        return (self._min is None or value >= self._min) and (
            self._max is None or value <= self._max
        )


class _IntParameter(_NumberParameter):
    TYPE_KEY = "int"
    TYPES = (int,)


class _StrParameter(_Parameter):
    """String with optional length bounds"""

    TYPE_KEY = "str"
    TYPES = (str,)

    def __init__(
        self,
        *,
        min_len: Optional[int] = None,
        max_len: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min_len = min_len
        self._max_len = max_len

    def _validate_value(self, value: str) -> bool:
        return (self._min_len is None or len(value) >= self._min_len) and (
            self._max_len is None or len(value) <= self._max_len
        )


class _BoolParameter(_Parameter):
    TYPE_KEY = "bool"
    TYPES = (bool,)

    def _validate_value(self, value: bool) -> bool:
        return True


class _EnumParameter(_Parameter):
    """A parameter with a fixed set of valid values"""

    TYPE_KEY = "enum"
    TYPES = (str, int, type(None))

    def __init__(self, *, values: List[Union[str, int, None]], **kwargs):
        super().__init__(**kwargs)
        assert (
            isinstance(values, list) and values
        ), "Must specify at least one enum value!"
        self.values = values

    def _validate_value(self, value: Union[str, int, None]) -> bool:
        return value in self.values


# pylint: enable=too-few-public-methods

_PARAMETER_TYPES = {
    param_type.TYPE_KEY: param_type
    for param_type in [
        _NumberParameter,
        _IntParameter,
        _StrParameter,
        _BoolParameter,
        _EnumParameter,
    ]
}


## Parsing #####################################################################


def _parse_validation_config(
    validation_config: dict,
    prefix_parts: Optional[List[str]] = None,
) -> Dict[str, _Parameter]:
    """Recursively parse the validation file into a flat dict from nested
    config keys to parameters
    """
    output_dict = {}
    prefix_parts = prefix_parts or []
    for key, val in validation_config.items():
        assert isinstance(key, str), "Only string keys allowed!"
        if not isinstance(val, dict):
            continue
        key_parts = prefix_parts + [key]
        nested_key = NESTED_DICT_DELIM.join(key_parts)
        param_type = val.get("type")
        if isinstance(param_type, str) and param_type in _PARAMETER_TYPES:
            log.debug3("Found parameter at %s", nested_key)
            param_args = {k: v for k, v in val.items() if k != "type"}
            output_dict[nested_key] = _PARAMETER_TYPES[param_type](**param_args)
        else:
            log.debug3("Recursing into %s", nested_key)
            output_dict.update(_parse_validation_config(val, key_parts))
    return output_dict
