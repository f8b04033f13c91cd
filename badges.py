"""Badge catalog and unlock rules.

Each system badge pairs display metadata (name, icon, description) with a
predicate over the full list of a user's dive logs. Predicates only ever
count or test for existence, so adding logs can never lock a badge again.
Unlock state for system badges is always computed here and never stored;
user-authored badges live in badge_store and are unlocked from creation.

Logs are the plain dicts produced by ``DiveLog.to_dict()``.
"""

NIGHT_DIVE = 'Night Dive'


def _num(log, key):
    try:
        return float(log.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def _count(logs, pred):
    return sum(1 for log in logs if pred(log))


def _hour(time_str):
    """Return the hour of an 'HH:MM' string, or None when it can't be parsed."""
    try:
        return int(str(time_str).split(':')[0])
    except (TypeError, ValueError):
        return None


def _species(logs):
    names = set()
    for log in logs:
        for life in log.get('marine_life_sightings') or []:
            name = (life or {}).get('name')
            if name:
                names.add(name)
    return names


def _early_entry(log):
    hour = _hour(log.get('time_in')) if log.get('time_in') else None
    return hour is not None and hour < 8


BADGES = {
    # Log-count milestones
    'first-splash': {'name': 'First Splash', 'icon': '🤿', 'description': 'Recorded your first dive log.',
                     'condition': lambda logs: len(logs) >= 1},
    'first-step': {'name': 'Open Water', 'icon': '🥉', 'description': 'Recorded 4 dive logs.',
                   'condition': lambda logs: len(logs) >= 4},
    'adv-diver': {'name': 'Advanced', 'icon': '🥈', 'description': 'Recorded 20 dive logs.',
                  'condition': lambda logs: len(logs) >= 20},
    'veteran-diver': {'name': 'Master Diver', 'icon': '🥇', 'description': 'Recorded 50 or more dives.',
                      'condition': lambda logs: len(logs) >= 50},
    'century-diver': {'name': '100 Logs', 'icon': '💯', 'description': 'Recorded 100 dives.',
                      'condition': lambda logs: len(logs) >= 100},

    # Single-dive thresholds
    'deep-diver': {'name': 'Deep Explorer', 'icon': '⚓', 'description': 'Logged a dive to 30m or deeper.',
                   'condition': lambda logs: any(_num(l, 'max_depth_meters') >= 30 for l in logs)},
    'cold-blooded': {'name': 'Ice Diver', 'icon': '❄️', 'description': 'Dived in water at 15°C or colder.',
                     'condition': lambda logs: any(_num(l, 'water_temp_celsius') <= 15 for l in logs)},
    'long-breath': {'name': 'Iron Lungs', 'icon': '😤', 'description': 'Stayed down 60 minutes or more in one dive.',
                    'condition': lambda logs: any(_num(l, 'duration_minutes') >= 60 for l in logs)},
    'early-bird': {'name': 'Early Bird', 'icon': '🌅', 'description': 'Entered the water before 8 AM.',
                   'condition': lambda logs: any(_early_entry(l) for l in logs)},

    # Counted conditions
    'night-owl': {'name': 'Night Owl', 'icon': '🌙', 'description': 'Logged 3 or more night dives.',
                  'condition': lambda logs: _count(logs, lambda l: l.get('dive_type') == NIGHT_DIVE) >= 3},
    'shutterbug': {'name': 'Underwater Photographer', 'icon': '📸', 'description': 'Wrote 5 or more logs with photos.',
                   'condition': lambda logs: _count(logs, lambda l: bool(l.get('photos'))) >= 5},
    'tropical-diver': {'name': 'Tropical Diver', 'icon': '🏝️', 'description': 'Dived 5 or more times in water at 28°C or warmer.',
                       'condition': lambda logs: _count(logs, lambda l: _num(l, 'water_temp_celsius') >= 28) >= 5},
    'safety-first': {'name': 'Safety First', 'icon': '🛡️', 'description': 'Surfaced with 50 bar or more on 10 or more dives.',
                     'condition': lambda logs: _count(logs, lambda l: _num(l, 'end_pressure_bar') >= 50) >= 10},

    # Distinct values
    'marine-biologist': {'name': 'Marine Biologist', 'icon': '🐠', 'description': 'Recorded 10 or more different species.',
                         'condition': lambda logs: len(_species(logs)) >= 10},
    'globe-trotter': {'name': 'Ocean Explorer', 'icon': '🌏', 'description': 'Dived in 3 or more different locations.',
                      'condition': lambda logs: len({l.get('location') for l in logs}) >= 3},
}


def _meta(badge_id, badge):
    return {'id': badge_id, 'name': badge['name'], 'icon': badge['icon'], 'description': badge['description']}


def get_badge_meta(badge_id):
    badge = BADGES.get(badge_id)
    if badge is None:
        return {'id': badge_id, 'name': badge_id, 'icon': '🏅', 'description': ''}
    return _meta(badge_id, badge)


def catalog():
    """Return serializable metadata for every system badge, in catalog order."""
    return [_meta(badge_id, badge) for badge_id, badge in BADGES.items()]


def evaluate_badges(logs):
    """Return the set of system badge ids whose condition holds for `logs`."""
    logs = list(logs or [])
    return {badge_id for badge_id, badge in BADGES.items() if badge['condition'](logs)}


def newly_unlocked(before_logs, after_logs):
    """Return badge ids unlocked by `after_logs` that `before_logs` did not unlock, in catalog order."""
    gained = evaluate_badges(after_logs) - evaluate_badges(before_logs)
    return [badge_id for badge_id in BADGES if badge_id in gained]


def achievements(logs, custom_badges=()):
    """Return system and custom badges as one list of achievements.

    System badges appear with ``kind='computed'`` whether or not they are
    unlocked; custom badges follow with ``kind='stored'`` and are always
    unlocked.
    """
    unlocked = evaluate_badges(logs)
    items = []
    for meta in catalog():
        meta.update({'kind': 'computed', 'unlocked': meta['id'] in unlocked,
                     'category': None, 'unlocked_at': None})
        items.append(meta)
    for custom in custom_badges:
        items.append({
            'id': custom['id'],
            'name': custom['name'],
            'icon': custom.get('icon', ''),
            'description': custom.get('description', ''),
            'kind': 'stored',
            'unlocked': True,
            'category': custom.get('category') or 'marine',
            'unlocked_at': custom.get('unlocked_at'),
        })
    return items
