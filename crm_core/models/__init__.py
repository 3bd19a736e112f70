from crm_core.models.customer import Customer
from crm_core.models.order import Order, OrderItem
from crm_core.models.segment import Segment, SegmentMember
from crm_core.models.campaign import Campaign, CommunicationLog
