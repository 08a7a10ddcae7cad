"""
Formats Ember values for `print`, `debug`, `to_string` and `to_debug`.
"""
from ember.ember_datatypes import (
    Char, FnPtr, InclusiveRange, SharedCell, Timestamp, TypeRegistry, type_name,
)


class Printer:
    """
    Two renderings of every value: the display form used by `print` and
    string interpolation, and the debug form used by `debug`, which quotes
    strings and spells out unit as `()`.
    """

    def __init__(self, types: TypeRegistry = None):
        self.types = types
        self._handlers = self._create_handlers()

    def to_string(self, obj) -> str:
        if isinstance(obj, str):
            return str(obj)
        if obj is None:
            return ""
        return self.pformat(obj)

    def to_debug(self, obj) -> str:
        return self.pformat(obj)

    def pformat(self, obj) -> str:
        """Debug rendering; containers always show their elements this way."""
        return self._get_handler(obj)(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        for base, handler in self._handlers.items():
            if isinstance(obj, base) and base is not object:
                return handler
        return self._pformat_opaque

    def _create_handlers(self):
        return {
            type(None): self._pformat_unit,
            bool: self._pformat_bool,
            int: self._pformat_primitive,
            float: self._pformat_float,
            Char: self._pformat_char,
            str: self._pformat_str,
            list: self._pformat_list,
            dict: self._pformat_dict,
            bytearray: self._pformat_blob,
            range: self._pformat_range,
            InclusiveRange: self._pformat_inclusive_range,
            FnPtr: self._pformat_fn_ptr,
            Timestamp: self._pformat_timestamp,
            SharedCell: self._pformat_shared,
        }

    def _pformat_unit(self, obj):
        return "()"

    def _pformat_bool(self, obj):
        return "true" if obj else "false"

    def _pformat_primitive(self, obj):
        return str(obj)

    def _pformat_float(self, obj):
        if obj != obj:
            return "NaN"
        if obj in (float('inf'), float('-inf')):
            return "inf" if obj > 0 else "-inf"
        text = repr(obj)
        return text if ('.' in text or 'e' in text) else text + ".0"

    def _pformat_char(self, obj):
        return "'" + str(obj).replace("\\", "\\\\").replace("'", "\\'") + "'"

    def _pformat_str(self, obj):
        escaped = obj.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
        return f'"{escaped}"'

    def _pformat_list(self, obj):
        return "[" + ", ".join(self.pformat(x) for x in obj) + "]"

    def _pformat_dict(self, obj):
        items = ", ".join(f"{self._pformat_str(str(k))}: {self.pformat(v)}" for k, v in obj.items())
        return "#{" + items + "}"

    def _pformat_blob(self, obj):
        return "[" + obj.hex() + "]"

    def _pformat_range(self, obj):
        return f"{obj.start}..{obj.stop}"

    def _pformat_inclusive_range(self, obj):
        return f"{obj.start}..={obj.end}"

    def _pformat_fn_ptr(self, obj):
        return f'Fn("{obj.fn_name}")'

    def _pformat_timestamp(self, obj):
        return "<timestamp>"

    def _pformat_shared(self, obj):
        return self.pformat(obj.value)

    def _pformat_opaque(self, obj):
        # Host types that define their own display form keep it.
        if type(obj).__str__ is not object.__str__:
            return str(obj)
        return f"<{type_name(obj, self.types)}>"
