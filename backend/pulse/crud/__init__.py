from pulse.crud.crud_data_source import data_source
from pulse.crud.crud_query import query
from pulse.crud.crud_dataset import dataset
from pulse.crud.crud_visualization import visualization
from pulse.crud.crud_dashboard import dashboard
from pulse.crud.crud_dashboard_item import dashboard_item
from pulse.crud.crud_report import report
from pulse.crud.crud_schedule import schedule, schedule_execution
