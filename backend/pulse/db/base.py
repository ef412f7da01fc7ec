# Import all the models, so that Base has them before being
# imported by create_all
from pulse.db.base_class import Base  # noqa
from pulse.models.data_source import DataSource  # noqa
from pulse.models.query import Query  # noqa
from pulse.models.dataset import Dataset  # noqa
from pulse.models.visualization import Visualization  # noqa
from pulse.models.dashboard import Dashboard  # noqa
from pulse.models.dashboard_item import DashboardItem  # noqa
from pulse.models.report import Report  # noqa
from pulse.models.schedule import Schedule  # noqa
from pulse.models.schedule_execution import ScheduleExecution  # noqa
