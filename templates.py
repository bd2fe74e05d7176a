# templates.py
import re

from models import WorkUnit


def substitute(template, params):
    """
    Naive placeholder substitution: &&name, &name (sqlplus style) and {name}.

    Longer names go first so &db_name is not eaten by &db. Placeholders with
    no matching parameter are left as they are.
    """
    text = template
    for name in sorted(params, key=len, reverse=True):
        value = str(params[name])
        text = re.sub(r"&{1,2}" + re.escape(name) + r"\b", lambda _m: value, text, flags=re.IGNORECASE)
        text = text.replace("{" + name + "}", value)
    return text


def parse_params(pairs):
    """['owner=SCOTT', 'days=7'] -> {'owner': 'SCOTT', 'days': '7'}"""
    params = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"invalid parameter '{pair}' (expected name=value)")
        params[key] = value
    return params


def read_targets(lines):
    """Targets from a file: one or more per line, '#' starts a comment."""
    targets = []
    for line in lines:
        line = line.split("#", 1)[0]
        for item in re.split(r"[,\s]+", line):
            if item:
                targets.append(item)
    return targets


def build_units(targets, template, params=None):
    """One WorkUnit per target, in order; {target} / &target resolve to the target itself."""
    units = []
    for target in targets:
        target = (target or "").strip()
        if not target:
            raise ValueError("empty target name")
        merged = dict(params or {})
        merged.setdefault("target", target)
        units.append(WorkUnit(target=target, command=substitute(template, merged)))
    return units
