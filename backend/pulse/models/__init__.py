# 导入所有模型，保证 create_all 时全部注册
from pulse.models.data_source import DataSource
from pulse.models.query import Query
from pulse.models.dataset import Dataset
from pulse.models.visualization import Visualization
from pulse.models.dashboard import Dashboard
from pulse.models.dashboard_item import DashboardItem
from pulse.models.report import Report
from pulse.models.schedule import Schedule
from pulse.models.schedule_execution import ScheduleExecution
