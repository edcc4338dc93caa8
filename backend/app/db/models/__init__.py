from .common import *  # noqa
from .warehouse import *  # noqa
from .parties import *  # noqa
from .freight import *  # noqa
from .containers import *  # noqa
from .stock import *  # noqa
from .security_audit import *  # noqa

# Transactional outbox table
from app.events.outbox import *  # noqa
